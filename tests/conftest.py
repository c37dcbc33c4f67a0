import pathlib
import sys

import pytest
from pydantic import SecretStr

PROJECT_ROOT = pathlib.Path(__file__).resolve().parents[1]
SRC_DIR = PROJECT_ROOT / "src"
if str(SRC_DIR) not in sys.path:
    sys.path.insert(0, str(SRC_DIR))

from chatstream.config import Settings  # noqa: E402
from chatstream.repository import ChatRepository  # noqa: E402


def make_settings(**overrides) -> Settings:
    values = {
        "openrouter_api_key": SecretStr("test-key"),
        "openrouter_base_url": "https://example.com/api/v1",
        "default_model": "test/model",
        "system_prompt": None,
    }
    values.update(overrides)
    return Settings(_env_file=None, **values)  # pyright: ignore[reportCallIssue]


@pytest.fixture
def settings() -> Settings:
    return make_settings()


@pytest.fixture
async def repository(tmp_path):
    repo = ChatRepository(tmp_path / "chat.db")
    await repo.initialize()
    try:
        yield repo
    finally:
        await repo.close()
