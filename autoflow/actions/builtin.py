"""Built-in executors for record updates and outbound webhooks."""

from __future__ import annotations

import json
import logging
from typing import Any, Dict, Optional

import httpx

from ..contracts import DataContext
from ..records import RecordNotFound, RecordStore
from .base import ActionExecutor, ActionResult

logger = logging.getLogger(__name__)


def _entity_ref(entity: Dict[str, Any], config: Dict[str, Any]) -> tuple[str, str]:
    return (
        str(config.get("entity_type") or entity.get("_type") or "contact"),
        str(config.get("entity_id") or entity.get("id")),
    )


class UpdateFieldExecutor(ActionExecutor):
    """Set one field (``field``/``value``) or several (``fields``)."""

    action_type = "update_field"

    def __init__(self, records: RecordStore) -> None:
        self._records = records

    async def execute(
        self, config: Dict[str, Any], entity: Dict[str, Any], context: DataContext
    ) -> ActionResult:
        fields = dict(config.get("fields") or {})
        if config.get("field"):
            fields[config["field"]] = config.get("value")
        if not fields:
            return ActionResult.fail("configuration", "update_field needs 'field' or 'fields'")

        entity_type, entity_id = _entity_ref(entity, config)
        try:
            await self._records.update_fields(entity_type, entity_id, fields)
        except RecordNotFound as exc:
            return ActionResult.fail("not_found", str(exc))
        logger.info(f"Updated {entity_type} {entity_id}: {sorted(fields)}")
        return ActionResult.ok({"updated": fields})


class AddTagExecutor(ActionExecutor):
    action_type = "add_tag"

    def __init__(self, records: RecordStore) -> None:
        self._records = records

    async def execute(
        self, config: Dict[str, Any], entity: Dict[str, Any], context: DataContext
    ) -> ActionResult:
        tag = config.get("tag")
        if not tag:
            return ActionResult.fail("configuration", "add_tag needs 'tag'")
        entity_type, entity_id = _entity_ref(entity, config)
        try:
            await self._records.add_tag(entity_type, entity_id, str(tag))
        except RecordNotFound as exc:
            return ActionResult.fail("not_found", str(exc))
        return ActionResult.ok({"tag": tag, "added": True})


class RemoveTagExecutor(ActionExecutor):
    action_type = "remove_tag"

    def __init__(self, records: RecordStore) -> None:
        self._records = records

    async def execute(
        self, config: Dict[str, Any], entity: Dict[str, Any], context: DataContext
    ) -> ActionResult:
        tag = config.get("tag")
        if not tag:
            return ActionResult.fail("configuration", "remove_tag needs 'tag'")
        entity_type, entity_id = _entity_ref(entity, config)
        try:
            await self._records.remove_tag(entity_type, entity_id, str(tag))
        except RecordNotFound as exc:
            return ActionResult.fail("not_found", str(exc))
        return ActionResult.ok({"tag": tag, "removed": True})


class WebhookExecutor(ActionExecutor):
    """POST (or other method) the resolved ``body`` to ``url``.

    5xx and 429 responses, timeouts and connection errors are reported as
    transient so the retry manager reschedules the step; other 4xx responses
    are permanent.
    """

    action_type = "send_webhook"

    def __init__(
        self, client: Optional[httpx.AsyncClient] = None, timeout: float = 10.0
    ) -> None:
        self._client = client
        self._timeout = timeout

    async def _send(self, client: httpx.AsyncClient, config: Dict[str, Any]) -> httpx.Response:
        method = str(config.get("method") or "POST").upper()
        body = config.get("body")
        kwargs: Dict[str, Any] = {"headers": config.get("headers") or {}}
        if isinstance(body, (dict, list)):
            kwargs["json"] = body
        elif body is not None:
            kwargs["content"] = str(body)
        return await client.request(method, config["url"], **kwargs)

    async def execute(
        self, config: Dict[str, Any], entity: Dict[str, Any], context: DataContext
    ) -> ActionResult:
        if not config.get("url"):
            return ActionResult.fail("configuration", "send_webhook needs 'url'")
        try:
            if self._client is not None:
                response = await self._send(self._client, config)
            else:
                async with httpx.AsyncClient(timeout=self._timeout) as client:
                    response = await self._send(client, config)
        except httpx.TimeoutException as exc:
            return ActionResult.fail("timeout", f"Webhook timed out: {exc}")
        except httpx.TransportError as exc:
            return ActionResult.fail("upstream_unavailable", f"Webhook unreachable: {exc}")

        if response.status_code == 429 or response.status_code >= 500:
            return ActionResult.fail(
                "transient", f"Webhook returned HTTP {response.status_code}"
            )
        if response.status_code >= 400:
            return ActionResult.fail(
                "permanent", f"Webhook rejected with HTTP {response.status_code}"
            )

        try:
            payload: Any = response.json()
        except (json.JSONDecodeError, ValueError):
            payload = response.text
        return ActionResult.ok({"status_code": response.status_code, "body": payload})
