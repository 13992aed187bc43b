from rollwave_core.notifications.delivery import (
    DeliveryAttempt,
    DeliveryOptions,
    DeliveryResult,
    deliver_webhook,
    sign_payload,
    verify_signature,
    write_delivery_log,
)
from rollwave_core.notifications.notifier import (
    DeferredNotifier,
    Notifier,
    NullNotifier,
    RecordingNotifier,
    WebhookNotifier,
    build_notifier,
    publish_safely,
)
from rollwave_core.notifications.store import (
    delete_webhook,
    load_webhooks,
    register_webhook,
    save_webhooks,
    subscribed,
)
from rollwave_core.notifications.types import (
    EVENT_ACTIONS_ASSIGNED,
    EVENT_GROUP_ERROR_THRESHOLD,
    EVENT_GROUP_STATUS_CHANGED,
    EVENT_ROLLOUT_CREATED,
    EVENT_ROLLOUT_STATUS_CHANGED,
    EVENT_ROLLOUT_STOPPED,
    EVENT_TYPES,
    RolloutEvent,
    WebhookRegistration,
    event_to_dict,
)

__all__ = [
    "DeferredNotifier",
    "DeliveryAttempt",
    "DeliveryOptions",
    "DeliveryResult",
    "EVENT_ACTIONS_ASSIGNED",
    "EVENT_GROUP_ERROR_THRESHOLD",
    "EVENT_GROUP_STATUS_CHANGED",
    "EVENT_ROLLOUT_CREATED",
    "EVENT_ROLLOUT_STATUS_CHANGED",
    "EVENT_ROLLOUT_STOPPED",
    "EVENT_TYPES",
    "Notifier",
    "NullNotifier",
    "RecordingNotifier",
    "RolloutEvent",
    "WebhookNotifier",
    "WebhookRegistration",
    "build_notifier",
    "delete_webhook",
    "deliver_webhook",
    "event_to_dict",
    "load_webhooks",
    "publish_safely",
    "register_webhook",
    "save_webhooks",
    "sign_payload",
    "subscribed",
    "verify_signature",
    "write_delivery_log",
]
