import asyncio
from types import SimpleNamespace

from order_engine.services.payment_service import ChargeRequest, GatewayResult


class RecordingBroadcaster:
    def __init__(self):
        self.events = []

    def publish(self, event_name, payload):
        self.events.append((event_name, payload))

    def named(self, event_name):
        return [payload for name, payload in self.events if name == event_name]


class RecordingAuditSink:
    def __init__(self):
        self.records = []

    def record(self, action, entity_type, entity_id, actor, metadata=None):
        self.records.append(
            SimpleNamespace(action=action, entity_type=entity_type, entity_id=entity_id, actor=actor, metadata=metadata)
        )

    def actions(self):
        return [record.action for record in self.records]


class ExplodingBroadcaster:
    def publish(self, event_name, payload):
        raise RuntimeError("websocket hub is down")


class ExplodingAuditSink:
    def record(self, action, entity_type, entity_id, actor, metadata=None):
        raise RuntimeError("audit store is down")


class DecliningGateway:
    def __init__(self, message="Card declined"):
        self.message = message
        self.requests = []

    async def charge(self, request: ChargeRequest) -> GatewayResult:
        self.requests.append(request)
        return GatewayResult(approved=False, message=self.message)


class SlowGateway:
    async def charge(self, request: ChargeRequest) -> GatewayResult:
        await asyncio.sleep(5)
        return GatewayResult(approved=True, transaction_id="too_late")


class BrokenGateway:
    async def charge(self, request: ChargeRequest) -> GatewayResult:
        raise ConnectionError("gateway unreachable")
