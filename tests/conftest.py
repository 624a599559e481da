import pathlib
import sys
from typing import Generator

import pytest
from fastapi.testclient import TestClient

PROJECT_ROOT = pathlib.Path(__file__).resolve().parents[1]
SRC_DIR = PROJECT_ROOT / "src"
TESTS_DIR = PROJECT_ROOT / "tests"
if str(PROJECT_ROOT) not in sys.path:
    sys.path.insert(0, str(PROJECT_ROOT))
if str(SRC_DIR) not in sys.path:
    sys.path.insert(0, str(SRC_DIR))
if str(TESTS_DIR) not in sys.path:
    sys.path.insert(0, str(TESTS_DIR))

from fakes import FakePlaylistSink  # noqa: E402
from readaloud.app import create_app  # noqa: E402
from readaloud.config import get_settings  # noqa: E402


@pytest.fixture
def reader_client(monkeypatch, tmp_path) -> Generator[TestClient, None, None]:
    """Test client with every data file under ``tmp_path`` and no provider keys."""
    monkeypatch.setenv("OPENAI_API_KEY", "")
    monkeypatch.setenv("AZURE_SPEECH_KEY", "")
    for name in (
        "READER_SETTINGS_PATH",
        "CREDENTIALS_PATH",
        "PROFILES_PATH",
        "PROGRESS_PATH",
        "BOOKMARKS_PATH",
        "ERROR_LOG_PATH",
        "DOCUMENT_PATH",
    ):
        monkeypatch.setenv(name, str(tmp_path / "data" / f"{name.lower()}.json"))
    monkeypatch.setenv("TEMP_AUDIO_DIR", str(tmp_path / "audio"))
    monkeypatch.setenv("LOG_DIR", str(tmp_path / "logs"))

    logging_conf = tmp_path / "logging_settings.conf"
    logging_conf.write_text("terminal = warning\nfile = off\n")
    monkeypatch.setenv("LOGGING_SETTINGS_PATH", str(logging_conf))
    get_settings.cache_clear()

    app = create_app(sink=FakePlaylistSink())

    with TestClient(app) as client:
        yield client

    get_settings.cache_clear()
