from __future__ import annotations

import asyncio
from types import SimpleNamespace

import pytest

from swapwatch import client as client_module


class FakeTelegramClient:
    instances: list["FakeTelegramClient"] = []

    def __init__(self, session: str, api_id: int, api_hash: str) -> None:
        self.session = session
        self.api_id = api_id
        self.api_hash = api_hash
        self.bot_token = None
        FakeTelegramClient.instances.append(self)

    async def start(self, bot_token: str) -> "FakeTelegramClient":
        self.bot_token = bot_token
        return self

    async def get_me(self):
        return SimpleNamespace(id=7, username="swapwatch_bot")


def test_bot_client_logs_in_with_token(monkeypatch) -> None:
    FakeTelegramClient.instances.clear()
    monkeypatch.setattr(client_module, "TelegramClient", FakeTelegramClient)
    monkeypatch.setenv("API_ID", "12345")
    monkeypatch.setenv("API_HASH", "hash")
    monkeypatch.delenv("SESSION_NAME", raising=False)

    client = asyncio.run(client_module.build_bot_client("123:abc"))

    assert client is FakeTelegramClient.instances[0]
    assert (client.session, client.api_id, client.api_hash) == ("swapwatch-bot", 12345, "hash")
    assert client.bot_token == "123:abc"


def test_bot_client_requires_credentials(monkeypatch) -> None:
    monkeypatch.setattr(client_module, "TelegramClient", FakeTelegramClient)
    monkeypatch.delenv("API_ID", raising=False)
    monkeypatch.setenv("API_HASH", "hash")

    with pytest.raises(RuntimeError):
        asyncio.run(client_module.build_bot_client("123:abc"))


def test_bot_client_requires_token(monkeypatch) -> None:
    monkeypatch.setattr(client_module, "TelegramClient", FakeTelegramClient)
    monkeypatch.setenv("API_ID", "12345")
    monkeypatch.setenv("API_HASH", "hash")

    with pytest.raises(RuntimeError):
        asyncio.run(client_module.build_bot_client(""))
