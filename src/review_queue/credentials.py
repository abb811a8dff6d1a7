"""GitHub token lookup: environment, then the gh CLI, then an interactive prompt."""

from __future__ import annotations

import getpass
import os
import subprocess
import sys

from review_queue.github import AuthError

ENV_TOKEN_VAR = "REVIEW_QUEUE_GH_TOKEN"


def get_token_from_env() -> str | None:
    """Return the token from REVIEW_QUEUE_GH_TOKEN, or None if unset or blank."""
    token = os.environ.get(ENV_TOKEN_VAR, "").strip()
    return token or None


def get_gh_token() -> str:
    """Obtain a GitHub token via `gh auth token`."""
    try:
        result = subprocess.run(
            ["gh", "auth", "token"],  # noqa: S607
            capture_output=True,
            text=True,
            check=False,
        )
    except FileNotFoundError as e:
        msg = f"gh CLI not found. Install it or set {ENV_TOKEN_VAR}."
        raise AuthError(msg) from e
    if result.returncode != 0:
        msg = f"gh CLI not authenticated. Run: gh auth login (or set {ENV_TOKEN_VAR})"
        raise AuthError(msg)
    token = result.stdout.strip()
    if not token:
        msg = "gh auth token returned empty output"
        raise AuthError(msg)
    return token


def get_token() -> str:
    """Return the token for this session."""
    return get_token_from_env() or get_gh_token()


def prompt_for_token() -> str:
    """Ask for a personal access token on the terminal."""
    print("GitHub personal access token required.", file=sys.stderr)
    print("Create one at: https://github.com/settings/tokens", file=sys.stderr)
    token = getpass.getpass("Enter token: ").strip()
    if not token:
        msg = "Token cannot be empty"
        raise AuthError(msg)
    return token


def reprompt_token() -> str:
    """Ask for a replacement after GitHub rejected the current token.

    The new token is exported into this process's environment so later
    refreshes reuse it; persisting it is left to the user.
    """
    print("\nYour GitHub token was rejected (invalid or expired).", file=sys.stderr)
    token = prompt_for_token()
    os.environ[ENV_TOKEN_VAR] = token
    print(
        f"New token accepted for this session. Set {ENV_TOKEN_VAR} in your shell profile "
        "to persist it.",
        file=sys.stderr,
    )
    return token
