"""KashFlow session-token acquisition.

KashFlow issues a session token in two steps:

  1. POST /sessiontoken with Username/Password  → TemporaryToken plus the
     memorable-word character positions the account must answer.
  2. PUT  /sessiontoken with the TemporaryToken and the requested
     memorable-word characters                  → permanent SessionToken.

A pre-issued token (KASHFLOW_SESSION_TOKEN) bypasses both steps.
"""

import logging

import httpx

from kfsync.core.config import Settings
from kfsync.kashflow.errors import KashFlowApiError, KashFlowAuthError

logger = logging.getLogger(__name__)


def _memorable_word_positions(body: dict) -> list[int]:
    """Positions come back as "1,4,6", as a list, or as a MemorableWordList of {Position}."""
    required = (
        body.get("MemorableWordPositions")
        or body.get("RequiredChars")
        or body.get("requiredChars")
    )
    if isinstance(required, str) and required.strip():
        out = []
        for part in required.split(","):
            try:
                out.append(int(part.strip()))
            except ValueError:
                continue
        return out
    word_list = body.get("MemorableWordList")
    if isinstance(word_list, list):
        return [x["Position"] for x in word_list if isinstance(x, dict) and isinstance(x.get("Position"), int)]
    if isinstance(required, list):
        out = []
        for x in required:
            try:
                out.append(int(x))
            except (TypeError, ValueError):
                continue
        return out
    return []


async def get_session_token(settings: Settings, http: httpx.AsyncClient) -> str:
    """Return a bearer token for KashFlow, running the two-step flow if needed.

    ``http`` must already carry the KashFlow base URL. Raises
    KashFlowAuthError when credentials are missing or the API returns no
    token, and KashFlowApiError when a step is rejected (e.g. PasswordExpired).
    """
    if settings.kashflow_session_token:
        return settings.kashflow_session_token

    username = settings.kashflow_username
    password = settings.kashflow_password
    if not username or not password:
        raise KashFlowAuthError(
            "Missing KASHFLOW_USERNAME or KASHFLOW_PASSWORD for session token acquisition"
        )

    # Step 1: temporary token (KashFlow expects capitalised keys)
    resp = await http.post(
        "/sessiontoken",
        json={"Username": username, "Password": password, "KeepUserLoggedIn": False},
    )
    if resp.is_error:
        err = KashFlowApiError.from_response(resp)
        logger.error("Step 1 /sessiontoken failed: status=%s error=%s", err.status, err.error_code)
        raise err
    step1 = resp.json() or {}

    temp_token = (
        step1.get("TemporaryToken")
        or step1.get("tempToken")
        or step1.get("TemToken")
        or step1.get("token")
    )
    if not temp_token:
        logger.error("No temporary token returned from KashFlow (keys: %s)", sorted(step1))
        raise KashFlowAuthError("Failed to obtain temporary session token")

    positions = _memorable_word_positions(step1)
    if not positions:
        logger.warning("No memorable word characters requested; using temporary token as session token")
        return temp_token

    memorable_word = settings.kashflow_memorable_word
    if not memorable_word:
        raise KashFlowAuthError("Memorable word required but KASHFLOW_MEMORABLE_WORD is not set")

    word_list = [
        {"Position": pos, "Value": memorable_word[pos - 1] if 0 < pos <= len(memorable_word) else ""}
        for pos in positions
    ]
    resp = await http.put(
        "/sessiontoken",
        json={"TemporaryToken": temp_token, "MemorableWordList": word_list, "KeepUserLoggedIn": False},
    )
    if resp.is_error:
        err = KashFlowApiError.from_response(resp)
        logger.error("Step 2 /sessiontoken failed: status=%s error=%s", err.status, err.error_code)
        raise err
    step2 = resp.json() or {}

    session_token = (
        step2.get("SessionToken")
        or step2.get("KFSessionToken")
        or step2.get("Token")
        or step2.get("token")
    )
    if not session_token:
        logger.error("No permanent token returned from KashFlow (keys: %s)", sorted(step2))
        raise KashFlowAuthError("Failed to obtain permanent session token")
    return session_token
