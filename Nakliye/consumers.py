from channels.db import database_sync_to_async
from channels.generic.websocket import AsyncJsonWebsocketConsumer

from .carrier_view import build_carrier_view_payload
from .identity import get_carrier_for_user
from .realtime import carrier_jobs_group_name


def _resolve_carrier_snapshot(user):
    carrier = get_carrier_for_user(user)
    if carrier is None:
        return None, None
    return carrier.id, build_carrier_view_payload(carrier)


class CarrierJobsConsumer(AsyncJsonWebsocketConsumer):
    CLOSE_CODES = {
        "unauthorized": 4401,
        "forbidden": 4403,
    }

    async def connect(self):
        user = self.scope.get("user")
        if not user or not getattr(user, "is_authenticated", False):
            await self.close(code=self.CLOSE_CODES["unauthorized"])
            return

        carrier_id, snapshot = await database_sync_to_async(_resolve_carrier_snapshot)(user)
        if carrier_id is None:
            await self.close(code=self.CLOSE_CODES["forbidden"])
            return

        self.user = user
        self.group_name = carrier_jobs_group_name(carrier_id)
        await self.channel_layer.group_add(self.group_name, self.channel_name)
        await self.accept()
        await self.send_json({"type": "snapshot", "view": snapshot})

    async def disconnect(self, close_code):
        group_name = getattr(self, "group_name", "")
        if group_name:
            await self.channel_layer.group_discard(group_name, self.channel_name)
        await super().disconnect(close_code)

    async def receive_json(self, content, **kwargs):
        event_type = (content or {}).get("type")
        if event_type == "ping":
            await self.send_json({"type": "pong"})
        elif event_type == "refresh":
            _carrier_id, snapshot = await database_sync_to_async(_resolve_carrier_snapshot)(self.user)
            await self.send_json({"type": "snapshot", "view": snapshot})

    async def lifecycle_changed(self, event):
        await self.send_json(
            {
                "type": "lifecycle.changed",
                "reason": event.get("reason", ""),
                "shipment_ref": event.get("shipment_ref", ""),
            }
        )
