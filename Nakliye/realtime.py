import logging

from asgiref.sync import async_to_sync
from channels.layers import get_channel_layer
from django.db import transaction

logger = logging.getLogger(__name__)


def carrier_jobs_group_name(carrier_id):
    return f"carrier_jobs_{int(carrier_id)}"


def publish_carrier_change(carrier_id, reason, shipment_ref=""):
    channel_layer = get_channel_layer()
    if channel_layer is None:
        return False
    try:
        async_to_sync(channel_layer.group_send)(
            carrier_jobs_group_name(carrier_id),
            {
                "type": "lifecycle.changed",
                "reason": reason,
                "shipment_ref": shipment_ref,
            },
        )
    except Exception as exc:
        # The change is already committed; a dropped push only delays the client refresh.
        logger.warning("Carrier %s push failed: %s", carrier_id, exc)
        return False
    return True


def notify_carriers_on_commit(carrier_ids, reason, shipment_ref=""):
    for carrier_id in sorted({int(value) for value in carrier_ids if value}):
        transaction.on_commit(
            lambda carrier_id=carrier_id: publish_carrier_change(carrier_id, reason, shipment_ref)
        )
