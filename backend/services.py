"""Process-wide engine wiring for the HTTP backend.

One LocalHost, one settings store and one StoryEngine per process, created by
init_services() and reached through the accessors below. Data layout:

    {data_dir}/
      settings.json      settings store (per-chat story state under "storyState")
      engine.json        EngineConfig overrides
"""

from pathlib import Path

from story_driver.config import get_config
from story_driver.engine import StoryEngine
from story_driver.host import LocalHost
from story_driver.llm import LLM, build_llm
from story_driver.storage import JsonSettingsStore

_data_dir: Path | None = None
_host: LocalHost | None = None
_engine: StoryEngine | None = None


def init_services(data_dir: Path, llm: LLM | None = None) -> None:
    global _data_dir, _host, _engine

    if _engine is not None:
        _engine.dispose()

    _data_dir = data_dir
    _data_dir.mkdir(parents=True, exist_ok=True)
    _host = LocalHost(llm or build_llm())
    _engine = StoryEngine(
        _host,
        JsonSettingsStore(_data_dir / "settings.json"),
        config=get_config(config_path()),
    )
    _engine.start()


def data_dir() -> Path:
    assert _data_dir is not None, "Call init_services() before using the engine"
    return _data_dir


def config_path() -> Path:
    return data_dir() / "engine.json"


def host() -> LocalHost:
    assert _host is not None, "Call init_services() before using the engine"
    return _host


def engine() -> StoryEngine:
    assert _engine is not None, "Call init_services() before using the engine"
    return _engine
