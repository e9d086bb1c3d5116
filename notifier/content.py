"""
Notification content for job-lifecycle events.

Pure functions: (event type, status, entity fields) -> title, body and the
data payload the device uses to open the job. A missing field renders as
an empty string.
"""

from typing import Any, Dict, Tuple, Union

from notifier.models import EventType, NotificationContent

DEEP_LINK_TEMPLATE = "app://jobs/{entity_id}"

# Fields copied into the data payload when present
DATA_FIELDS = (
    'title',
    'job_type',
    'property_name',
    'property_address',
    'scheduled_date',
    'status',
    'previous_status',
    'staff_id',
    'staff_name',
    'priority',
    'completion_notes',
    'reason',
)

STATUS_TEMPLATES = {
    'accepted': ("Job Accepted", "{title} accepted by {staff_name}"),
    'rejected': ("Job Rejected", "{title} rejected by {staff_name}"),
    'started': ("Job Started", "{staff_name} started {title}"),
    'completed': ("Job Completed", "{title} completed by {staff_name}"),
    'cancelled': ("Job Cancelled", "{title} cancelled"),
}
DEFAULT_STATUS_TEMPLATE = ("Job Updated", "{title} status changed to {status}")

EVENT_TEMPLATES = {
    EventType.JOB_ASSIGNED: ("New Job Assignment", "{title} - {job_type} at {property_name}"),
    EventType.JOB_REMINDER: ("Job Reminder", "{title} at {property_name} is scheduled for {scheduled_date}"),
    EventType.JOB_ESCALATED: ("Job Escalated", "{title} at {property_name} needs attention: {reason}"),
    EventType.BOOKING_UPDATED: ("Booking Updated", "Booking at {property_name} changed to {status}"),
    EventType.EMERGENCY: ("Emergency", "{title} at {property_name} requires immediate action"),
}


class _BlankFields(dict):
    """Mapping for ``str.format_map`` that renders missing keys as ''."""

    def __missing__(self, key):
        return ""


def _normalize(fields: Dict[str, Any]) -> _BlankFields:
    normalized = _BlankFields()
    for key, value in (fields or {}).items():
        normalized[key] = "" if value is None else str(value)
    if normalized.get('job_type'):
        normalized['job_type'] = normalized['job_type'].replace('_', ' ')
    return normalized


def _templates_for(event_type: EventType, values: Dict[str, str]) -> Tuple[str, str]:
    if event_type in (EventType.JOB_STATUS_UPDATED, EventType.JOB_COMPLETED):
        status = values.get('status', '').strip().lower()
        if not status and event_type == EventType.JOB_COMPLETED:
            status = 'completed'
        return STATUS_TEMPLATES.get(status, DEFAULT_STATUS_TEMPLATE)
    return EVENT_TEMPLATES[event_type]


def build_data(entity_id: str, fields: Dict[str, Any]) -> Dict[str, Any]:
    data: Dict[str, Any] = {'job_id': entity_id}
    for key in DATA_FIELDS:
        value = (fields or {}).get(key)
        if value is not None and value != "":
            data[key] = value
    if 'status' in data and 'previous_status' in data:
        data['status_change'] = f"{data['previous_status']} -> {data['status']}"
    data['deep_link'] = DEEP_LINK_TEMPLATE.format(entity_id=entity_id)
    return data


def build_content(
    event_type: Union[EventType, str],
    entity_id: str,
    fields: Dict[str, Any]
) -> NotificationContent:
    """
    Build title, body and data for an event.

    Args:
        event_type: Event type (unknown strings raise ValueError)
        entity_id: Job id, used for the deep link
        fields: Entity fields (title, job_type, property_name, status, staff_name, ...)

    Returns:
        NotificationContent
    """
    event_type = EventType.coerce(event_type)
    values = _normalize(fields)
    title_template, body_template = _templates_for(event_type, values)

    return NotificationContent(
        title=title_template.format_map(values),
        body=body_template.format_map(values),
        data=build_data(entity_id, fields),
    )
