import sys
from pathlib import Path

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

SRC = ROOT / "src"
if SRC.exists() and str(SRC) not in sys.path:
    sys.path.insert(0, str(SRC))

TESTS = Path(__file__).resolve().parent
if str(TESTS) not in sys.path:
    sys.path.insert(0, str(TESTS))

import pytest

from chatdb import build_chat_db, build_legacy_chat_db
from chatvault.config import ChatVaultSettings, get_settings
from chatvault.services import MessageService
from chatvault.store.fetch import StoreQuery


@pytest.fixture(autouse=True)
def _fresh_settings():
    get_settings.cache_clear()
    yield
    get_settings.cache_clear()


@pytest.fixture
def chat_db(tmp_path: Path) -> Path:
    return build_chat_db(tmp_path / "chat.db")


@pytest.fixture
def legacy_chat_db(tmp_path: Path) -> Path:
    return build_legacy_chat_db(tmp_path / "legacy-chat.db")


@pytest.fixture
def settings(chat_db: Path) -> ChatVaultSettings:
    return ChatVaultSettings(chat_db_path=str(chat_db))


@pytest.fixture
def service(settings: ChatVaultSettings):
    svc = MessageService(settings)
    yield svc
    svc.reset_caches()


class RecordingFetcher:
    """Row fetcher double that records every query and replays canned rows."""

    def __init__(self, responses=None, delegate=None) -> None:
        self.calls: list[StoreQuery] = []
        self._responses = responses or {}
        self._delegate = delegate

    async def __call__(self, query: StoreQuery, store_path: str):
        self.calls.append(query)
        response = self._responses.get(query.label)
        if isinstance(response, Exception):
            raise response
        if response is not None:
            return [dict(row) for row in response]
        if self._delegate is not None:
            return await self._delegate(query, store_path)
        return []

    @property
    def labels(self) -> list[str]:
        return [call.label for call in self.calls]


@pytest.fixture
def recording_fetcher():
    return RecordingFetcher
