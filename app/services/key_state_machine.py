"""
Access key lifecycle state machine.

All allowed status changes live in TRANSITIONS, keyed by (current status,
trigger). Each entry names the next status and the side effects the caller
has to carry out. This module does no I/O: the reconciliation pass and the
key service execute the side effects.

    PENDING --FIRST_TRAFFIC--> ACTIVE
    ACTIVE  --EXPIRY_REACHED--> EXPIRED
    ACTIVE  --LIMIT_REACHED--> DEPLETED
    ACTIVE/PENDING --ADMIN_DISABLE--> DISABLED
    DISABLED --ADMIN_ENABLE--> ACTIVE
    DISABLED --ADMIN_ENABLE_UNUSED--> PENDING

DISABLED has no automatic triggers, so a disabled key is immune to the
reconciliation pass until an admin enables it again.
"""
import enum
from dataclasses import dataclass, field, fields
from datetime import datetime, timedelta
from typing import Dict, Optional, Tuple

from app.models.access_key import AccessKey, KeyStatus, ExpirationType
from app.utils.time_utils import as_utc


class Trigger(str, enum.Enum):
    """Conditions that can move a key between states."""
    FIRST_TRAFFIC = "FIRST_TRAFFIC"
    EXPIRY_REACHED = "EXPIRY_REACHED"
    LIMIT_REACHED = "LIMIT_REACHED"
    ADMIN_DISABLE = "ADMIN_DISABLE"
    ADMIN_ENABLE = "ADMIN_ENABLE"
    ADMIN_ENABLE_UNUSED = "ADMIN_ENABLE_UNUSED"


class SideEffect(str, enum.Enum):
    """Work attached to a transition."""
    STAMP_FIRST_USE = "STAMP_FIRST_USE"
    START_EXPIRY_CLOCK = "START_EXPIRY_CLOCK"
    ARCHIVE = "ARCHIVE"
    DELETE_REMOTE_KEY = "DELETE_REMOTE_KEY"
    RECORD_DISABLE = "RECORD_DISABLE"
    CLOSE_SESSIONS = "CLOSE_SESSIONS"
    RECREATE_REMOTE_KEY = "RECREATE_REMOTE_KEY"
    REBASE_OFFSET = "REBASE_OFFSET"
    REAPPLY_DATA_LIMIT = "REAPPLY_DATA_LIMIT"


@dataclass(frozen=True)
class Transition:
    next_status: KeyStatus
    side_effects: Tuple[SideEffect, ...] = ()


_DISABLE_EFFECTS = (SideEffect.DELETE_REMOTE_KEY, SideEffect.RECORD_DISABLE, SideEffect.CLOSE_SESSIONS)
_ENABLE_EFFECTS = (SideEffect.RECREATE_REMOTE_KEY, SideEffect.REBASE_OFFSET, SideEffect.REAPPLY_DATA_LIMIT)

TRANSITIONS: Dict[Tuple[KeyStatus, Trigger], Transition] = {
    (KeyStatus.PENDING, Trigger.FIRST_TRAFFIC): Transition(
        KeyStatus.ACTIVE, (SideEffect.STAMP_FIRST_USE, SideEffect.START_EXPIRY_CLOCK)
    ),
    (KeyStatus.ACTIVE, Trigger.EXPIRY_REACHED): Transition(KeyStatus.EXPIRED, (SideEffect.ARCHIVE,)),
    (KeyStatus.ACTIVE, Trigger.LIMIT_REACHED): Transition(KeyStatus.DEPLETED, (SideEffect.ARCHIVE,)),
    (KeyStatus.ACTIVE, Trigger.ADMIN_DISABLE): Transition(KeyStatus.DISABLED, _DISABLE_EFFECTS),
    (KeyStatus.PENDING, Trigger.ADMIN_DISABLE): Transition(KeyStatus.DISABLED, _DISABLE_EFFECTS),
    (KeyStatus.DISABLED, Trigger.ADMIN_ENABLE): Transition(KeyStatus.ACTIVE, _ENABLE_EFFECTS),
    (KeyStatus.DISABLED, Trigger.ADMIN_ENABLE_UNUSED): Transition(KeyStatus.PENDING, _ENABLE_EFFECTS),
}

# Automatic triggers in evaluation order; the first one that fires wins
AUTOMATIC_TRIGGERS = (Trigger.FIRST_TRAFFIC, Trigger.EXPIRY_REACHED, Trigger.LIMIT_REACHED)

DURATION_EXPIRATION_TYPES = {ExpirationType.DURATION_FROM_CREATION, ExpirationType.START_ON_FIRST_USE}


class InvalidTransitionError(Exception):
    """Raised when a trigger is not allowed from the key's current status."""

    def __init__(self, status: KeyStatus, trigger: Trigger):
        super().__init__(f"Cannot apply {trigger.value} to a key in status {status.value}")
        self.status = status
        self.trigger = trigger


def transition_for(status: KeyStatus, trigger: Trigger) -> Transition:
    """Look up a transition or raise InvalidTransitionError."""
    transition = TRANSITIONS.get((KeyStatus(status), trigger))
    if transition is None:
        raise InvalidTransitionError(KeyStatus(status), trigger)
    return transition


class _Unset:
    def __repr__(self):
        return "UNSET"

    def __bool__(self):
        return False


UNSET = _Unset()


@dataclass
class KeyPatch:
    """
    Field-level change set for an AccessKey.

    Every field defaults to UNSET; only fields that were explicitly assigned
    are written by apply_to(). None is a real value (clears the column).
    """
    status: object = UNSET
    used_bytes: object = UNSET
    usage_offset: object = UNSET
    first_used_at: object = UNSET
    last_used_at: object = UNSET
    expires_at: object = UNSET
    estimated_devices: object = UNSET
    peak_devices: object = UNSET
    disabled_at: object = UNSET
    disabled_remote_key_id: object = UNSET
    remote_key_id: object = UNSET
    access_url: object = UNSET
    method: object = UNSET
    name: object = UNSET
    email: object = UNSET
    notes: object = UNSET
    data_limit_bytes: object = UNSET
    data_limit_reset_strategy: object = UNSET
    last_data_limit_reset_at: object = UNSET
    expiration_type: object = UNSET
    duration_days: object = UNSET
    side_effects: Tuple[SideEffect, ...] = field(default=())

    def changed_fields(self) -> Dict[str, object]:
        return {
            f.name: getattr(self, f.name)
            for f in fields(self)
            if f.name != "side_effects" and getattr(self, f.name) is not UNSET
        }

    def is_empty(self) -> bool:
        return not self.changed_fields()

    def apply_to(self, key: AccessKey) -> Dict[str, object]:
        """Write present fields onto the key; returns the fields that actually changed."""
        applied = {}
        for name, value in self.changed_fields().items():
            if getattr(key, name) != value:
                setattr(key, name, value)
                applied[name] = value
        return applied


def _fire(key: AccessKey, trigger: Trigger, effective_bytes: int, now: datetime) -> bool:
    if trigger is Trigger.FIRST_TRAFFIC:
        return effective_bytes > 0
    if trigger is Trigger.EXPIRY_REACHED:
        expires_at = as_utc(key.expires_at)
        return expires_at is not None and expires_at <= now
    if trigger is Trigger.LIMIT_REACHED:
        # Only the locally configured limit counts; the remote one is offset-shifted
        return key.data_limit_bytes is not None and effective_bytes >= key.data_limit_bytes
    return False


def evaluate_automatic(key: AccessKey, effective_bytes: int, now: datetime) -> KeyPatch:
    """
    Decide the automatic transition for one reconciliation pass.

    Triggers are checked against the status the key had when the pass began,
    in AUTOMATIC_TRIGGERS order, and at most one fires. A PENDING key can
    therefore never reach EXPIRED or DEPLETED without first being ACTIVE.
    """
    patch = KeyPatch()
    status = KeyStatus(key.status)

    for trigger in AUTOMATIC_TRIGGERS:
        transition = TRANSITIONS.get((status, trigger))
        if transition is None or not _fire(key, trigger, effective_bytes, now):
            continue

        patch.status = transition.next_status
        patch.side_effects = transition.side_effects

        if SideEffect.STAMP_FIRST_USE in transition.side_effects:
            patch.first_used_at = now
        if SideEffect.START_EXPIRY_CLOCK in transition.side_effects:
            expires_at = expiry_on_first_use(key, now)
            if expires_at is not None:
                patch.expires_at = expires_at
        break

    return patch


def expiry_on_first_use(key: AccessKey, now: datetime) -> Optional[datetime]:
    """Expiry computed when a key is first used, for duration-based expiration."""
    if not key.duration_days or key.expiration_type not in DURATION_EXPIRATION_TYPES:
        return None
    return now + timedelta(days=key.duration_days)


def calculate_expiration(
    expiration_type: ExpirationType,
    now: datetime,
    expires_at: Optional[datetime] = None,
    duration_days: Optional[int] = None,
) -> Tuple[Optional[datetime], KeyStatus]:
    """Expiry date and initial status for a newly configured expiration."""
    if expiration_type == ExpirationType.FIXED_DATE:
        return as_utc(expires_at), KeyStatus.ACTIVE
    if expiration_type == ExpirationType.DURATION_FROM_CREATION:
        if duration_days:
            return now + timedelta(days=duration_days), KeyStatus.ACTIVE
        return None, KeyStatus.ACTIVE
    if expiration_type == ExpirationType.START_ON_FIRST_USE:
        return None, KeyStatus.PENDING
    return None, KeyStatus.ACTIVE


def enable_trigger_for(key: AccessKey) -> Trigger:
    """A first-use key that never carried traffic goes back to PENDING when enabled."""
    if key.expiration_type == ExpirationType.START_ON_FIRST_USE and key.first_used_at is None:
        return Trigger.ADMIN_ENABLE_UNUSED
    return Trigger.ADMIN_ENABLE
