"""
Node Effects

Capabilities the step executor delegates to for effect kinds:
- EmailEffect: sends an email over SMTP
- HttpEffect: calls an external HTTP endpoint
- WebhookCallEffect: POSTs the workflow context to a URL
- DatabaseOperationEffect: inserts/updates a row in an allow-listed table

Every effect implements NodeEffect.run(node, context) -> dict and raises on
failure; the executor wraps failures into NodeEffectError.

Effects may run more than once for the same run (queue retries are
at-least-once), so targets should tolerate repeats.
"""

import asyncio
import ipaddress
import logging
import re
import smtplib
from abc import ABC, abstractmethod
from email.message import EmailMessage
from typing import Any, Dict, Optional

import httpx
from sqlalchemy import MetaData, Table, insert, update
from sqlalchemy.orm import Session

from ..config import EffectSettings
from .context import ContextManager, make_json_serializable
from .exceptions import NodeEffectError
from .nodes import NodeType
from .predicates import resolve_field, MISSING

logger = logging.getLogger(__name__)

_PLACEHOLDER = re.compile(r"\{([A-Za-z_][\w.]*)\}")


def render_template(value: Any, context: Dict[str, Any]) -> Any:
    """
    Replace {field} / {nested.field} placeholders with context values.

    A string that is exactly one placeholder yields the raw value (keeps its type).
    Unknown placeholders are left untouched. Dicts and lists are rendered recursively.
    """
    if isinstance(value, dict):
        return {k: render_template(v, context) for k, v in value.items()}
    if isinstance(value, list):
        return [render_template(v, context) for v in value]
    if not isinstance(value, str):
        return value

    whole = _PLACEHOLDER.fullmatch(value)
    if whole:
        resolved = resolve_field(context, whole.group(1))
        return value if resolved is MISSING else resolved

    def substitute(match):
        resolved = resolve_field(context, match.group(1))
        return match.group(0) if resolved is MISSING else str(resolved)

    return _PLACEHOLDER.sub(substitute, value)


class NodeEffect(ABC):
    """Performs the side effect of one node kind."""

    @abstractmethod
    async def run(self, node: NodeType, context: Dict[str, Any]) -> Dict[str, Any]:
        """
        Perform the effect.

        Returns:
            Output dict merged into the workflow context

        Raises:
            Exception on failure (wrapped into NodeEffectError by the executor)
        """


# ============================================================================
# EMAIL
# ============================================================================

class EmailEffect(NodeEffect):
    """Sends a plain-text email via SMTP (STARTTLS when credentials are set)."""

    def __init__(self, settings: EffectSettings):
        self.settings = settings

    async def run(self, node: NodeType, context: Dict[str, Any]) -> Dict[str, Any]:
        if not self.settings.smtp_host:
            raise NodeEffectError("SMTP_HOST is not configured", node_id=node.id, node_type=node.type)

        to = render_template(node.config.get("to"), context)
        message = EmailMessage()
        message["From"] = node.config.get("from") or self.settings.smtp_sender
        message["To"] = to if isinstance(to, str) else ", ".join(to)
        message["Subject"] = str(render_template(node.config.get("subject", ""), context))
        message.set_content(str(render_template(node.config.get("body", ""), context)))

        await asyncio.to_thread(self._send, message)

        logger.info(f"Email sent by node {node.id}", extra={"node_id": node.id, "to": message["To"]})
        return {node.id: {"sent": True, "to": message["To"]}}

    def _send(self, message: EmailMessage) -> None:
        with smtplib.SMTP(self.settings.smtp_host, self.settings.smtp_port, timeout=30) as smtp:
            if self.settings.smtp_user:
                smtp.starttls()
                smtp.login(self.settings.smtp_user, self.settings.smtp_password or "")
            smtp.send_message(message)


# ============================================================================
# HTTP
# ============================================================================

class HttpEffect(NodeEffect):
    """
    Calls config.url with httpx.

    Non-2xx responses are failures. The response (JSON when possible, text
    otherwise) is stored under config.output_key or the node id.

    Args:
        settings: Effect settings (timeout, SSRF guard)
        transport: Optional httpx transport (tests use httpx.MockTransport)
    """

    default_method = "POST"

    def __init__(self, settings: EffectSettings, transport: Optional[httpx.AsyncBaseTransport] = None):
        self.settings = settings
        self.transport = transport

    def _check_host(self, url: str) -> None:
        if not self.settings.block_private_hosts:
            return
        host = httpx.URL(url).host
        if not host:
            raise NodeEffectError(f"Invalid URL: {url}")
        if host.lower() == "localhost":
            raise NodeEffectError(f"URL blocked (private host): {url}")
        try:
            address = ipaddress.ip_address(host)
        except ValueError:
            return
        if address.is_private or address.is_loopback or address.is_link_local or address.is_unspecified:
            raise NodeEffectError(f"URL blocked (private host): {url}")

    def _build_body(self, node: NodeType, method: str, context: Dict[str, Any]) -> Any:
        if "body" in node.config:
            return render_template(node.config["body"], context)
        if method == "GET":
            return None
        return make_json_serializable(ContextManager(context).public_view())

    async def _request(self, node: NodeType, context: Dict[str, Any]) -> httpx.Response:
        url = str(render_template(node.config["url"], context))
        self._check_host(url)

        method = str(node.config.get("method", self.default_method)).upper()
        headers = render_template(node.config.get("headers") or {}, context)
        body = self._build_body(node, method, context)
        timeout = node.config.get("timeout", self.settings.http_timeout_seconds)

        async with httpx.AsyncClient(timeout=timeout, transport=self.transport) as client:
            response = await client.request(method, url, headers=headers, json=body)

        logger.info(
            f"{method} {url} -> {response.status_code}",
            extra={"node_id": node.id, "status_code": response.status_code}
        )

        if not response.is_success:
            raise NodeEffectError(
                f"HTTP {method} {url} failed with status {response.status_code}",
                node_id=node.id,
                node_type=node.type
            )
        return response

    @staticmethod
    def _parse(response: httpx.Response) -> Any:
        try:
            return response.json()
        except ValueError:
            return response.text

    async def run(self, node: NodeType, context: Dict[str, Any]) -> Dict[str, Any]:
        response = await self._request(node, context)
        key = node.config.get("output_key") or node.id
        return {key: {"status": response.status_code, "body": self._parse(response)}}


class WebhookCallEffect(HttpEffect):
    """POSTs the workflow context (without provenance keys) to config.url."""

    async def run(self, node: NodeType, context: Dict[str, Any]) -> Dict[str, Any]:
        response = await self._request(node, context)
        return {node.id: {"called": True, "status": response.status_code}}


# ============================================================================
# DATABASE
# ============================================================================

class DatabaseOperationEffect(NodeEffect):
    """
    Inserts or updates a row through SQLAlchemy Core.

    Only tables listed in settings.allowed_tables are writable. The write
    joins the caller's transaction and is committed with the step record.
    """

    def __init__(self, session: Session, settings: EffectSettings):
        self.session = session
        self.settings = settings
        self._tables: Dict[str, Table] = {}

    def _table(self, name: str) -> Table:
        if name not in self.settings.allowed_tables:
            raise NodeEffectError(f"Table '{name}' is not allowed for database-op nodes")
        if name not in self._tables:
            self._tables[name] = Table(name, MetaData(), autoload_with=self.session.connection())
        return self._tables[name]

    async def run(self, node: NodeType, context: Dict[str, Any]) -> Dict[str, Any]:
        table = self._table(node.config["table"])
        values = render_template(node.config.get("values") or {}, context)
        unknown = set(values) - set(table.c.keys())
        if unknown:
            raise NodeEffectError(f"Unknown columns for {table.name}: {sorted(unknown)}", node_id=node.id)

        if node.config["operation"] == "insert":
            statement = insert(table).values(**values)
        else:
            where = render_template(node.config["where"], context)
            statement = update(table).values(**values)
            for column, expected in where.items():
                statement = statement.where(table.c[column] == expected)

        result = self.session.execute(statement)
        self.session.flush()

        logger.info(
            f"database-op {node.config['operation']} on {table.name}",
            extra={"node_id": node.id, "rowcount": result.rowcount}
        )
        return {node.id: {"operation": node.config["operation"], "table": table.name, "rowcount": result.rowcount}}
