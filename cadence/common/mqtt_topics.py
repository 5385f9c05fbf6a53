"""Canonical MQTT topic constants for Cadence.

All services MUST use these constants instead of hardcoding topic strings.
Topic namespace: cadence/
"""

# Detection
REMINDERS_DETECT = "cadence/reminders/detect"
REMINDERS_PASS_COMPLETED = "cadence/reminders/pass/completed"

# Outbox
OUTBOX_STATUS = "cadence/reminders/outbox/status"
OUTBOX_RETRY = "cadence/reminders/outbox/retry"

# Delivery (consumed by whichever transport owns the recipient)
NOTIFICATION_SEND = "cadence/notifications/send"

# Entity upserts from collaborating services
ENTITY_UPSERT_PREFIX = "cadence/entities"
EVENTS_UPSERT = f"{ENTITY_UPSERT_PREFIX}/events/upsert"
TASKS_UPSERT = f"{ENTITY_UPSERT_PREFIX}/tasks/upsert"
USERS_UPSERT = f"{ENTITY_UPSERT_PREFIX}/users/upsert"
CONVERSATIONS_UPSERT = f"{ENTITY_UPSERT_PREFIX}/conversations/upsert"
ENTITY_UPSERT_ALL = f"{ENTITY_UPSERT_PREFIX}/+/upsert"
