"""Core orchestration logic for the tenant mail relay."""

from __future__ import annotations

import asyncio
import math
import uuid
from typing import Any, Dict, Iterable, List, Optional, Sequence

from .auth import authorize, extract_domain
from .credentials import CredentialsStore, TransportCredentials
from .directory import DomainDirectory
from .errors import PersistenceError, RelayError, TransportError, ValidationError
from .logger import get_logger
from .persistence import Persistence, now_millis
from .prometheus import MailMetrics
from .transport import DEFAULT_TIMEOUT, MailTransport, build_message

DEFAULT_BATCH_SIZE = 10
DEFAULT_QUEUE_POLL_SECONDS = 5.0
DEFAULT_ARCHIVE_MAX_ROWS = 100_000
DEFAULT_ARCHIVE_CULL_INTERVAL_SECONDS = 600.0


class RelayCore:
    """Coordinate authorization, queueing, delivery and archive retention."""

    def __init__(
        self,
        *,
        db_path: str | None = "relay.db",
        smtp_host: str = "localhost",
        smtp_port: int = 1025,
        smtp_user: str | None = None,
        smtp_password: str | None = None,
        smtp_timeout: float = DEFAULT_TIMEOUT,
        queue_poll_seconds: float = DEFAULT_QUEUE_POLL_SECONDS,
        batch_size: int = DEFAULT_BATCH_SIZE,
        archive_max_rows: int = DEFAULT_ARCHIVE_MAX_ROWS,
        archive_cull_interval_seconds: float = DEFAULT_ARCHIVE_CULL_INTERVAL_SECONDS,
        seed_domains: Iterable[str] = (),
        logger=None,
        metrics: MailMetrics | None = None,
        test_mode: bool = False,
        log_delivery_activity: bool = False,
    ):
        """Prepare the runtime collaborators and loop state."""
        self.logger = logger or get_logger()
        self.persistence = Persistence(db_path or ":memory:")
        self.metrics = metrics or MailMetrics()
        self.directory = DomainDirectory(self.persistence)
        self.credentials = CredentialsStore(
            self.persistence,
            TransportCredentials(user=smtp_user or "", password=smtp_password or ""),
        )
        self.transport = MailTransport(smtp_host, smtp_port, self.credentials, timeout=smtp_timeout)

        self._seed_domains = [d for d in seed_domains if d and d.strip()]
        self._batch_size = max(1, int(batch_size))
        self._archive_max_rows = max(0, int(archive_max_rows))
        self._test_mode = bool(test_mode)
        self._log_delivery_activity = bool(log_delivery_activity)

        base_poll = max(0.05, float(queue_poll_seconds))
        self._queue_poll_interval = math.inf if self._test_mode else base_poll
        self._cull_interval = math.inf if self._test_mode else max(0.05, float(archive_cull_interval_seconds))

        self._stop = asyncio.Event()
        self._wake_event = asyncio.Event()  # Wake event for the delivery loop
        self._wake_cull_event = asyncio.Event()  # Wake event for the archive culler
        self._task_delivery: Optional[asyncio.Task] = None
        self._task_cull: Optional[asyncio.Task] = None

    async def init(self) -> None:
        """Create the schema, seed domains and load credential overrides."""
        await self.persistence.init_db()
        await self.directory.seed(self._seed_domains)
        await self.credentials.load()
        recovered = await self.persistence.requeue_stale()
        if recovered:
            self.logger.warning("Returned %d interrupted message(s) to the queue", recovered)
        await self._refresh_gauges()

    # ----------------------------------------------------------------- lifecycle
    async def start(self) -> None:
        """Start the delivery worker and the archive culler."""
        self.logger.debug("Starting RelayCore...")
        await self.init()
        self._stop.clear()
        self._task_delivery = asyncio.create_task(self._delivery_loop(), name="delivery-loop")
        self._task_cull = asyncio.create_task(self._cull_loop(), name="archive-cull-loop")
        self.logger.debug("Background tasks created")

    async def stop(self) -> None:
        """Stop the background tasks."""
        self._stop.set()
        self._wake_event.set()
        self._wake_cull_event.set()
        await asyncio.gather(
            *(task for task in [self._task_delivery, self._task_cull] if task),
            return_exceptions=True,
        )

    # ------------------------------------------------------------------ commands
    async def handle_command(self, cmd: str, payload: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        """Execute one of the external commands and return a structured result."""
        payload = payload or {}
        try:
            return await self._dispatch_command(cmd, payload)
        except RelayError as exc:
            return {"ok": False, "error": exc.message, "error_code": exc.code}

    async def _dispatch_command(self, cmd: str, payload: Dict[str, Any]) -> Dict[str, Any]:
        if cmd == "run now":
            self._wake_event.set()
            return {"ok": True}
        if cmd == "registerDomain":
            return {"ok": True, **await self.register_domain(payload.get("domain", ""))}
        if cmd == "listDomains":
            return {"ok": True, "domains": await self.list_domains()}
        if cmd == "deleteDomain":
            await self.delete_domain(payload.get("domain", ""))
            return {"ok": True}
        if cmd == "transportStatus":
            return {"ok": True, **await self.get_transport_status()}
        if cmd == "setTransport":
            await self.set_transport_credentials(payload.get("user", ""), payload.get("pass", ""))
            return {"ok": True}
        if cmd == "submit":
            result = await self.submit(
                payload.get("token"),
                payload.get("from", ""),
                payload.get("to") or [],
                payload.get("subject", ""),
                payload.get("body", ""),
                payload.get("html"),
                sync=bool(payload.get("sync", False)),
                save=bool(payload.get("save", True)),
            )
            return {"ok": True, **result}
        if cmd == "health":
            return {"ok": True, **await self.health()}
        return {"ok": False, "error": "unknown command", "error_code": "unknown_command"}

    # ------------------------------------------------------------ operations
    async def register_domain(self, name: str) -> Dict[str, str]:
        """Register a domain and return ``{domain, token}``."""
        return await self.directory.register(name)

    async def list_domains(self) -> List[Dict[str, Any]]:
        """Return registered domains ordered by name."""
        return await self.directory.list()

    async def delete_domain(self, name: str) -> None:
        """Remove a domain and invalidate its token."""
        await self.directory.delete(name)

    async def get_transport_status(self) -> Dict[str, Any]:
        """Describe the outbound relay and whether credentials are set."""
        creds = await self.credentials.get()
        return {
            "configured": creds.configured,
            "user": creds.user,
            "host": self.transport.host,
            "port": self.transport.port,
        }

    async def set_transport_credentials(self, user: str, password: str) -> None:
        """Persist and hot-swap the SMTP credentials."""
        await self.credentials.set(user, password)

    async def submit(
        self,
        token: Optional[str],
        from_addr: str,
        to: Sequence[str],
        subject: str,
        body: str,
        html: Optional[str] = None,
        *,
        sync: bool = False,
        save: bool = True,
    ) -> Dict[str, str]:
        """Authorize a message then queue it or send it right away."""
        domain = await authorize(self.directory, token, from_addr)
        recipients = [to] if isinstance(to, str) else list(to or [])
        if not recipients:
            raise ValidationError("to list is empty")
        # Addresses must parse before the message is accepted.
        build_message(from_addr, recipients, subject, body, html)
        message = {"from": from_addr, "to": recipients, "subject": subject, "body": body, "html": html}

        if sync:
            try:
                await self.transport.send(from_addr, recipients, subject, body, html)
            except TransportError:
                self.metrics.inc_error(domain)
                raise
            msg_id = str(uuid.uuid4())
            self.metrics.inc_sent(domain, "sync")
            self.logger.info("Sent email %s for %s", msg_id, domain)
            if save:
                try:
                    await self.persistence.archive_message(message, queue_id=msg_id, sent_at=now_millis())
                except PersistenceError as exc:
                    self.logger.error("Failed to archive sent email %s: %s", msg_id, exc)
                await self._refresh_gauges()
            return {"id": msg_id, "status": "sent"}

        msg_id = await self.persistence.enqueue_message(message)
        if self._log_delivery_activity:
            self.logger.info("Queued email %s for %s (%d recipient(s))", msg_id, domain, len(recipients))
        await self._refresh_gauges()
        return {"id": msg_id, "status": "queued"}

    async def health(self) -> Dict[str, Any]:
        """Return queue and archive sizes."""
        return {
            "status": "ok",
            "queue_size": await self.persistence.count_queue(),
            "archive_size": await self.persistence.count_archive(),
        }

    # ------------------------------------------------------------ delivery worker
    async def _delivery_loop(self) -> None:
        """Periodically claim queued messages and deliver them."""
        self.logger.debug("Delivery loop started")
        while not self._stop.is_set():
            await self._wait_for_wakeup(self._wake_event, self._queue_poll_interval)
            if self._stop.is_set():
                break
            try:
                processed = await self._process_delivery_cycle()
                self.logger.debug("Delivery cycle processed=%d", processed)
            except PersistenceError as exc:
                self.logger.error("Delivery cycle failed: %s", exc)
            except Exception as exc:  # pragma: no cover
                self.logger.exception("Unhandled error in delivery loop: %s", exc)

    async def _process_delivery_cycle(self) -> int:
        """Deliver one batch of queued messages sequentially, oldest first."""
        stale = await self.persistence.requeue_stale()
        if stale:
            self.logger.warning("Returned %d interrupted message(s) to the queue", stale)
        batch = await self.persistence.claim_batch(self._batch_size)
        for entry in batch:
            await self._deliver(entry)
        await self._refresh_gauges()
        return len(batch)

    async def _deliver(self, entry: Dict[str, Any]) -> bool:
        """Attempt one claimed message and record the outcome."""
        msg_id = entry["id"]
        domain = extract_domain(entry.get("from")) or "unknown"
        if self._log_delivery_activity:
            self.logger.info(
                "Attempting delivery for message %s to %s (attempt %d)",
                msg_id,
                ", ".join(entry.get("to") or []) or "-",
                int(entry.get("attempts") or 0) + 1,
            )
        try:
            await self.transport.send(
                entry["from"],
                entry.get("to") or [],
                entry["subject"],
                entry["body"],
                entry.get("html"),
            )
        except RelayError as exc:
            self.logger.warning("Failed to send %s: %s", msg_id, exc)
            self.metrics.inc_error(domain)
            try:
                await self.persistence.resolve_failure(msg_id, str(exc))
            except PersistenceError as perr:
                self.logger.error("Failed to record delivery failure for %s: %s", msg_id, perr)
            return False

        self.logger.info("Sent queued email %s", msg_id)
        self.metrics.inc_sent(domain, "queued")
        try:
            await self.persistence.archive_message(entry, queue_id=msg_id, sent_at=now_millis())
            await self.persistence.resolve_success(msg_id)
        except PersistenceError as exc:
            # The row stays claimed and is requeued on the next cycle.
            self.logger.error("Failed to record delivery of %s: %s", msg_id, exc)
        return True

    # ------------------------------------------------------------ archive culler
    async def _cull_loop(self) -> None:
        """Periodically enforce the archive row ceiling."""
        while not self._stop.is_set():
            await self._wait_for_wakeup(self._wake_cull_event, self._cull_interval)
            if self._stop.is_set():
                break
            try:
                await self._process_cull_cycle()
            except PersistenceError as exc:
                self.logger.error("Archive culler: %s", exc)
            except Exception as exc:  # pragma: no cover
                self.logger.exception("Unhandled error in archive culler: %s", exc)

    async def _process_cull_cycle(self) -> int:
        """Delete the oldest archive rows above the ceiling."""
        removed = await self.persistence.cull_archive(self._archive_max_rows)
        if removed:
            self.logger.info("Archive culler: deleted %d rows", removed)
            self.metrics.inc_culled(removed)
        await self._refresh_gauges()
        return removed

    # ---------------------------------------------------------------- housekeeping
    async def _refresh_gauges(self) -> None:
        """Refresh the queue and archive size metrics."""
        try:
            queued = await self.persistence.count_queue()
            archived = await self.persistence.count_archive()
        except PersistenceError:
            self.logger.exception("Failed to refresh queue gauges")
            return
        self.metrics.set_queue_size(queued)
        self.metrics.set_archive_size(archived)

    async def _wait_for_wakeup(self, event: asyncio.Event, timeout: float | None) -> None:
        """Pause a loop for ``timeout`` seconds unless ``event`` is set first."""
        if self._stop.is_set():
            return
        if timeout is None or math.isinf(float(timeout)):
            await event.wait()
            event.clear()
            return
        timeout = max(0.0, float(timeout))
        if timeout == 0:
            await asyncio.sleep(0)
            return
        try:
            async with asyncio.timeout(timeout):
                await event.wait()
        except asyncio.TimeoutError:
            return
        event.clear()
