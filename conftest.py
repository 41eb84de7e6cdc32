import random
import shutil
from pathlib import Path

import pytest

from backend import services
from story_driver.host import Character, LocalHost
from story_driver.llm import EchoLLM
from story_driver.models import Story, parse_story
from story_driver.storage import MemorySettingsStore

TEST_DATA_DIR = Path("data-tests")

STORY_DATA = {
    "title": "The Tavern Job",
    "roles": {"bard": "Lute", "guard": "Captain Varn"},
    "checkpoints": [
        {"id": "A", "name": "Arrival", "objective": "Enter the tavern"},
        {"id": "B", "name": "Bargain", "objective": "Strike a deal with the fence"},
        {"id": "C", "name": "Escape", "objective": "Leave town before dawn"},
    ],
    "start": "A",
    "transitions": [
        {"id": "t-deal", "from": "A", "to": "B", "trigger": {"type": "regex", "patterns": ["deal", "/BARGAIN/"]}},
        {"id": "t-flee", "from": "A", "to": "C", "trigger": {"type": "regex", "patterns": ["run away"]}},
        {"id": "t-late", "from": "B", "to": "C", "trigger": {"type": "timed", "within_turns": 2}},
    ],
}

TAVERN_DATA = {
    "title": "Tavern Talk",
    "roles": {"bard": "Lute"},
    "checkpoints": [
        {"id": "tavern", "name": "Tavern", "objective": "Listen to the locals"},
        {"id": "street", "name": "Street", "objective": "Head out"},
    ],
    "transitions": [
        {"id": "t-out", "from": "tavern", "to": "street", "trigger": {"type": "regex", "patterns": ["leave"]}},
    ],
    "talk_control": {
        "checkpoints": {
            "tavern": {
                "replies": [
                    {
                        "speaker_id": "bard",
                        "trigger": "afterSpeak",
                        "probability": 100,
                        "content": {"kind": "static", "text": "Hello"},
                    },
                ],
            },
        },
    },
}


@pytest.fixture(autouse=True)
def clean_test_data():
    """Wipe and re-init data-tests/ before every test."""
    if TEST_DATA_DIR.exists():
        shutil.rmtree(TEST_DATA_DIR)
    services.init_services(TEST_DATA_DIR, llm=EchoLLM("The bard tips his hat."))
    yield
    # leave data-tests around after tests for inspection; CI can ignore it


@pytest.fixture
def story() -> Story:
    return parse_story(STORY_DATA)


@pytest.fixture
def tavern_story() -> Story:
    return parse_story(TAVERN_DATA)


@pytest.fixture
def settings() -> MemorySettingsStore:
    return MemorySettingsStore()


@pytest.fixture
def rng() -> random.Random:
    return random.Random(1234)


@pytest.fixture
def host() -> LocalHost:
    return LocalHost(
        EchoLLM("The bard tips his hat."),
        user_name="Robin",
        characters=[Character(name="Lute"), Character(name="Captain Varn")],
        chat_id="c42",
        group_id="g1",
    )
