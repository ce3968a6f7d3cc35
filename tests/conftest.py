"""Pytest configuration and fixtures."""

# pylint: disable=redefined-outer-name

from __future__ import annotations

from typing import TYPE_CHECKING, Any
from unittest.mock import AsyncMock

import pytest

from tests.fakes import CLIENT_ID, REDIRECT_URI, FakeBrowser, FakeClock, RecordingNotifier
from wisdom_oauth.client import WisdomServiceClient
from wisdom_oauth.config import WisdomServiceSettings, clear_settings
from wisdom_oauth.provider import WisdomAuthenticationProvider
from wisdom_oauth.secret_store import MemorySecretStorage, reset_secret_storage
from wisdom_oauth.token_store import TokenStore
from wisdom_oauth.types import TokenResponse, UserInfo


if TYPE_CHECKING:
    from collections.abc import Callable, Generator


@pytest.fixture(autouse=True)
def reset_singletons() -> Generator[None, None, None]:
    """Reset cached settings and the storage singleton around each test."""
    clear_settings()
    reset_secret_storage()
    yield
    clear_settings()
    reset_secret_storage()


@pytest.fixture()
def clock() -> FakeClock:
    """Create a fake clock."""
    return FakeClock()


@pytest.fixture()
def storage() -> MemorySecretStorage:
    """Create an in-memory secret storage."""
    return MemorySecretStorage()


@pytest.fixture()
def token_store(storage: MemorySecretStorage) -> TokenStore:
    """Create a token store over the memory storage."""
    return TokenStore(storage)


@pytest.fixture()
def service_settings() -> WisdomServiceSettings:
    """Create service settings with a short login timeout."""
    return WisdomServiceSettings(
        base_path="https://wisdom.test",
        client_id=CLIENT_ID,
        login_timeout_seconds=0.2,
    )


@pytest.fixture()
def service_client() -> AsyncMock:
    """Create a mocked endpoint client with a successful default script."""
    client = AsyncMock(spec=WisdomServiceClient)
    client.exchange_code.return_value = TokenResponse("T1", "R1", 3600)
    client.refresh.return_value = TokenResponse("T2", "R2", 3600)
    client.fetch_profile.return_value = UserInfo(username="alice")
    return client


@pytest.fixture()
def browser() -> FakeBrowser:
    """Create a browser that redirects back with code=ABC."""
    return FakeBrowser()


@pytest.fixture()
def notifier() -> RecordingNotifier:
    """Create a recording notifier."""
    return RecordingNotifier()


@pytest.fixture()
def provider_factory(
    service_settings: WisdomServiceSettings,
    token_store: TokenStore,
    service_client: AsyncMock,
    browser: FakeBrowser,
    notifier: RecordingNotifier,
    clock: FakeClock,
) -> Callable[..., WisdomAuthenticationProvider]:
    """Build providers wired to the shared test doubles."""

    def _build(**overrides: Any) -> WisdomAuthenticationProvider:
        kwargs: dict[str, Any] = {
            "settings": service_settings,
            "token_store": token_store,
            "service_client": service_client,
            "open_browser": browser,
            "notifier": notifier,
            "clock": clock,
        }
        kwargs.update(overrides)
        provider = WisdomAuthenticationProvider(REDIRECT_URI, **kwargs)
        browser.handler = provider.uri_handler
        return provider

    return _build


@pytest.fixture()
def provider(
    provider_factory: Callable[..., WisdomAuthenticationProvider],
) -> WisdomAuthenticationProvider:
    """Create a provider wired to the shared test doubles."""
    return provider_factory()
