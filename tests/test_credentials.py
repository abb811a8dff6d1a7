"""Tests for token lookup."""

from __future__ import annotations

import os
import subprocess
from unittest.mock import patch

import pytest

from review_queue.credentials import (
    ENV_TOKEN_VAR,
    get_gh_token,
    get_token,
    reprompt_token,
)
from review_queue.github import AuthError


def test_env_token_takes_precedence(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv(ENV_TOKEN_VAR, " ghp_env \n")
    with patch("review_queue.credentials.subprocess.run") as run:
        assert get_token() == "ghp_env"
    run.assert_not_called()


def test_falls_back_to_gh(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.delenv(ENV_TOKEN_VAR, raising=False)
    completed = subprocess.CompletedProcess(["gh"], 0, stdout="ghp_gh\n", stderr="")
    with patch("review_queue.credentials.subprocess.run", return_value=completed):
        assert get_token() == "ghp_gh"


def test_gh_missing_raises_auth_error() -> None:
    """get_gh_token raises AuthError (not FileNotFoundError) when gh CLI is absent."""
    with (
        patch("review_queue.credentials.subprocess.run", side_effect=FileNotFoundError),
        pytest.raises(AuthError, match="not found"),
    ):
        get_gh_token()


def test_gh_not_logged_in() -> None:
    completed = subprocess.CompletedProcess(["gh"], 1, stdout="", stderr="not logged in")
    with (
        patch("review_queue.credentials.subprocess.run", return_value=completed),
        pytest.raises(AuthError, match="gh auth login"),
    ):
        get_gh_token()


def test_reprompt_exports_new_token(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.delenv(ENV_TOKEN_VAR, raising=False)
    with patch("review_queue.credentials.getpass.getpass", return_value=" ghp_new "):
        assert reprompt_token() == "ghp_new"
    assert os.environ[ENV_TOKEN_VAR] == "ghp_new"


def test_empty_prompt_is_rejected() -> None:
    with (
        patch("review_queue.credentials.getpass.getpass", return_value=""),
        pytest.raises(AuthError, match="empty"),
    ):
        reprompt_token()
