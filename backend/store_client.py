import logging

import httpx

from backend.config import COMMIT_TIMEOUT_SECONDS, STORE_URL
from backend.errors import CommitTimeout, NetworkError
from backend.models import CommitResult, MutationRequest, commit_result

logger = logging.getLogger(__name__)


class HttpAuthoritativeStore:
    """
    Commits mutations to a remote deployment's `/store/commit` endpoint.

    Timeouts raise CommitTimeout, other request failures and 5xx raise NetworkError;
    4xx responses are treated as rejections.
    """

    def __init__(
        self,
        base_url: str = STORE_URL,
        *,
        timeout: float = COMMIT_TIMEOUT_SECONDS,
        transport: httpx.BaseTransport | None = None,
    ):
        self._client = httpx.Client(base_url=base_url, timeout=timeout, transport=transport)

    def close(self) -> None:
        self._client.close()

    def commit(self, dedup_key: str, mutation: MutationRequest) -> CommitResult:
        try:
            response = self._client.post(
                "/store/commit",
                json={"dedup_key": dedup_key, "mutation": dict(mutation)},
            )
        except httpx.TimeoutException as exc:
            raise CommitTimeout(f"Commit timed out: {exc}") from exc
        except httpx.RequestError as exc:
            raise NetworkError(f"Store unreachable: {exc}") from exc

        if response.status_code >= 500:
            raise NetworkError(f"Store error {response.status_code}")

        if response.status_code >= 400:
            try:
                detail = response.json().get("detail")
            except (ValueError, AttributeError):
                detail = None
            return commit_result("rejected", str(detail or f"HTTP {response.status_code}"))

        try:
            payload = response.json()
        except ValueError as exc:
            raise NetworkError("Store returned a malformed response") from exc

        if not isinstance(payload, dict):
            raise NetworkError("Store returned a malformed response")
        status = payload.get("status")
        if status not in {"applied", "already_applied", "rejected"}:
            raise NetworkError(f"Store returned unknown status '{status}'")
        return commit_result(status, payload.get("reason"))
