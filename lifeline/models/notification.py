from typing import Any

from pydantic import BaseModel

from lifeline.models.emergency import EmergencyStatus


class TransitionEvent(BaseModel):
    """A committed change that may need to be fanned out to recipients."""

    kind: str  # "new_emergency" or "status_change"
    emergency_id: str
    status: EmergencyStatus
    acting_user_id: str | None = None


class Notification(BaseModel):
    """One channel-independent message for one recipient topic."""

    recipient: str  # topic, e.g. "hospital_<id>", "user_<id>", "contact:<phone>"
    event_type: str
    payload: dict[str, Any]
