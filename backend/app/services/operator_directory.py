from typing import Any, Dict, Iterable, List, Optional

import httpx
import structlog

from app.core.config import settings

logger = structlog.get_logger()


class OperatorDirectory:
    """
    Client for the staff directory service.

    Used to reach operators who are active but not connected to a socket
    (push notification). The directory is external; failures here are
    logged and never reach the chat path.
    """

    def __init__(
        self,
        base_url: Optional[str] = None,
        push_url: Optional[str] = None,
        timeout: Optional[float] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.base_url = (base_url if base_url is not None else settings.OPERATOR_DIRECTORY_URL) or None
        self.push_url = (push_url if push_url is not None else settings.OPERATOR_PUSH_URL) or None
        self.timeout = timeout or settings.OPERATOR_DIRECTORY_TIMEOUT
        self._transport = transport

    @property
    def enabled(self) -> bool:
        return bool(self.base_url and self.push_url)

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(timeout=self.timeout, transport=self._transport)

    async def list_active_operator_ids(self) -> List[str]:
        if not self.base_url:
            return []
        async with self._client() as client:
            response = await client.get(f"{self.base_url.rstrip('/')}/operators/active")
            response.raise_for_status()
            payload = response.json()
        # Accept either a bare list or {"operators": [...]}
        items = payload.get("operators", []) if isinstance(payload, dict) else payload
        return [str(item["id"]) if isinstance(item, dict) else str(item) for item in items]

    async def push(self, operator_ids: Iterable[str], payload: Dict[str, Any]) -> None:
        ids = sorted(set(operator_ids))
        if not ids or not self.push_url:
            return
        async with self._client() as client:
            response = await client.post(
                self.push_url,
                json={"operator_ids": ids, "notification": payload},
            )
            response.raise_for_status()
        logger.info("operator_push_sent", recipients=len(ids))
