"""
Counter reconciliation.

Remote servers report a cumulative byte counter per key. That counter restarts
from zero whenever the remote key is recreated (re-enable after a disable) or
the server is reinstalled. Locally we keep a total that must survive those
events, so every key carries a signed usage offset:

    effective = raw - offset

When a key is re-enabled the offset is set to -used_bytes, so a fresh remote
counter C yields C + used_bytes. When a periodic data limit resets, the offset
is set to the current raw counter so effective usage starts again at zero.
"""
from dataclasses import dataclass
from typing import Optional


@dataclass(frozen=True)
class CounterReading:
    """Result of reconciling one raw counter sample."""
    effective_bytes: int
    delta_bytes: int
    reset_detected: bool
    usage_offset: int

    @property
    def activity_bytes(self) -> int:
        """Traffic seen this pass. After a reset the whole fresh counter is new traffic."""
        if self.reset_detected:
            return self.effective_bytes
        return max(self.delta_bytes, 0)


def reconcile_counter(
    raw_counter: Optional[int],
    usage_offset: Optional[int],
    previous_used_bytes: Optional[int],
) -> CounterReading:
    """
    Convert a raw remote counter into effective used bytes.

    Args:
        raw_counter: Cumulative bytes reported by the remote server, or None
            when the key is absent from the metrics report (treated as zero)
        usage_offset: Stored signed offset for the key
        previous_used_bytes: used_bytes stored after the previous pass

    Returns:
        CounterReading with the effective total, the delta since the previous
        pass, whether a counter reset was detected and the offset to store.
    """
    raw = max(int(raw_counter or 0), 0)
    offset = int(usage_offset or 0)
    previous = max(int(previous_used_bytes or 0), 0)

    if raw < offset:
        # Remote counter restarted below the baseline: trust the raw value
        return CounterReading(
            effective_bytes=raw,
            delta_bytes=raw - previous,
            reset_detected=True,
            usage_offset=0,
        )

    effective = raw - offset
    if effective < previous:
        # Counter went backwards without crossing the offset. Keep the stored
        # total and rebase so later growth continues from it.
        return CounterReading(
            effective_bytes=previous,
            delta_bytes=0,
            reset_detected=False,
            usage_offset=raw - previous,
        )

    return CounterReading(
        effective_bytes=effective,
        delta_bytes=effective - previous,
        reset_detected=False,
        usage_offset=offset,
    )


def unchanged_reading(usage_offset: Optional[int], previous_used_bytes: Optional[int]) -> CounterReading:
    """Reading used when no counter is available for a key (no metrics this pass)."""
    return CounterReading(
        effective_bytes=max(int(previous_used_bytes or 0), 0),
        delta_bytes=0,
        reset_detected=False,
        usage_offset=int(usage_offset or 0),
    )


def remote_limit_for(data_limit_bytes: Optional[int], usage_offset: Optional[int]) -> Optional[int]:
    """
    Limit to configure on the remote server for a local limit.

    The remote server enforces against its raw counter, so the local limit is
    shifted by the offset. Never negative.
    """
    if data_limit_bytes is None:
        return None
    return max(int(data_limit_bytes) + int(usage_offset or 0), 0)
