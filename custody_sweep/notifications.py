"""
Notification Sink

Structured custody events delivered to loguru and, optionally, to an
HTTP webhook.
"""

from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Dict, List, Optional, Sequence

import aiohttp
from loguru import logger


class EventType(str, Enum):
    WALLET_CREATED = "wallet_created"
    THRESHOLD_EXCEEDED = "threshold_exceeded"
    SWEEP_SUCCESS = "sweep_success"
    SWEEP_FAILURE = "sweep_failure"


@dataclass
class NotificationEvent:
    """Custody event payload"""
    type: EventType
    wallet_id: str
    wallet_name: Optional[str] = None
    chain: Optional[str] = None
    amounts: List[Dict] = field(default_factory=list)
    addresses: Dict[str, str] = field(default_factory=dict)
    tx_hash: Optional[str] = None
    error: Optional[str] = None
    error_kind: Optional[str] = None
    total_usd: Optional[float] = None
    created_at: str = field(default_factory=lambda: datetime.now(timezone.utc).isoformat())

    def to_dict(self) -> Dict:
        data = asdict(self)
        data['type'] = self.type.value
        return data

    def __repr__(self):
        return f"NotificationEvent({self.type.value}: {self.wallet_id})"


class NotificationSink:
    """Base sink; subclasses deliver events somewhere"""

    async def notify(self, event: NotificationEvent) -> None:
        raise NotImplementedError

    async def close(self) -> None:
        pass


class LogNotificationSink(NotificationSink):
    """Writes events to the application log"""

    async def notify(self, event: NotificationEvent) -> None:
        bound = logger.bind(event=event.type.value, wallet_id=event.wallet_id)
        if event.type is EventType.SWEEP_FAILURE:
            if event.error_kind == 'gas_fee_insufficient':
                bound.warning(
                    f"⚠ Sweep needs native fee top-up for wallet {event.wallet_id} "
                    f"on {event.chain}: {event.error}"
                )
            else:
                bound.error(f"❌ Sweep failed for wallet {event.wallet_id} ({event.error_kind}): {event.error}")
        elif event.type is EventType.THRESHOLD_EXCEEDED:
            bound.warning(f"🚨 Threshold exceeded for wallet {event.wallet_id}: ${event.total_usd:.2f}")
        elif event.type is EventType.SWEEP_SUCCESS:
            bound.info(
                f"✅ Sweep succeeded for wallet {event.wallet_id}: ${event.total_usd or 0:.2f} moved"
                + (f" (tx: {event.tx_hash})" if event.tx_hash else "")
            )
        else:
            bound.info(f"Wallet created: {event.wallet_id} with {len(event.addresses)} addresses")


class WebhookNotificationSink(NotificationSink):
    """POSTs events as JSON; delivery failures are logged, never raised"""

    def __init__(self, url: str, timeout: float = 5.0):
        self.url = url
        self.timeout = timeout
        self._session: Optional[aiohttp.ClientSession] = None

    async def _get_session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession(
                timeout=aiohttp.ClientTimeout(total=self.timeout)
            )
        return self._session

    async def notify(self, event: NotificationEvent) -> None:
        try:
            session = await self._get_session()
            async with session.post(self.url, json=event.to_dict()) as response:
                if response.status >= 400:
                    logger.error(f"✗ Webhook {self.url} rejected {event.type.value}: HTTP {response.status}")
                    return
            logger.debug(f"Webhook delivered: {event.type.value}")
        except Exception as e:
            logger.error(f"✗ Webhook delivery failed for {event.type.value}: {e}")

    async def close(self) -> None:
        if self._session and not self._session.closed:
            await self._session.close()
        self._session = None


class CompositeNotificationSink(NotificationSink):
    """Fans an event out to several sinks"""

    def __init__(self, sinks: Sequence[NotificationSink]):
        self.sinks = list(sinks)

    async def notify(self, event: NotificationEvent) -> None:
        for sink in self.sinks:
            try:
                await sink.notify(event)
            except Exception as e:
                logger.error(f"✗ {type(sink).__name__} failed for {event.type.value}: {e}")

    async def close(self) -> None:
        for sink in self.sinks:
            await sink.close()


def build_notifier(settings) -> NotificationSink:
    """Log sink plus webhook sink when a URL is configured"""
    sinks: List[NotificationSink] = [LogNotificationSink()]
    if settings.notifications.webhook_url:
        sinks.append(WebhookNotificationSink(
            settings.notifications.webhook_url, settings.notifications.timeout_seconds
        ))
    return CompositeNotificationSink(sinks)
