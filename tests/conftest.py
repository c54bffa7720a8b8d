"""Shared fixtures: signed initData strings and a fixed clock."""

import json
from urllib.parse import urlencode

import pytest

from tma_auth.config import Config
from tma_auth.init_data import build_data_check_string, compute_hash


BOT_TOKEN = "123456:ABC-DEF1234ghIkl-zyx57W2v1u123ew11"
NOW = 1_700_000_000.0


def _make_init_data(
    user_id: int = 12345,
    auth_date: int | None = None,
    extra_params: dict | None = None,
    bot_token: str = BOT_TOKEN,
    tamper_hash: str | None = None,
    user: dict | str | None = None,
) -> str:
    """Build a signed initData string."""
    if auth_date is None:
        auth_date = int(NOW)
    if user is None:
        user = {"id": user_id, "first_name": "Test", "username": "testuser"}
    user_json = user if isinstance(user, str) else json.dumps(user)
    params = {"user": user_json, "auth_date": str(auth_date), "query_id": "AAHdF6IQAAAAAN0XohDhrOrc"}
    if extra_params:
        params.update(extra_params)
    params["hash"] = tamper_hash or compute_hash(bot_token, build_data_check_string(params))
    return urlencode(params)


@pytest.fixture
def make_init_data():
    return _make_init_data


@pytest.fixture
def config():
    return Config(telegram_token=BOT_TOKEN, admin_users={1}, freshness_window=300)


@pytest.fixture
def clock():
    return lambda: NOW + 10
