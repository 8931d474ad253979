from __future__ import annotations

from .runtime import RuntimeState

CANARY = "canary"
BASELINE = "baseline"


def select_slice(service: str, runtime: RuntimeState, advance: bool = True) -> str:
    """Pick the traffic slice for the next request to ``service``.

    Strategy: expand the canary weight into 100 slots and walk them
    round-robin, so over any 100 consecutive requests exactly ``weight``
    go to the canary. With ``advance=False`` the next slice is only
    reported and the cursor stays where it is.
    """
    weight = max(0, min(100, runtime.get_weight(service)))
    if weight == 0:
        return BASELINE
    if weight == 100:
        return CANARY
    key = f"svc:{service}:slice"
    slot = runtime.next_index(key, 100) if advance else runtime.peek_index(key, 100)
    # Interleave the slots so a 10% canary is not served as one burst of 10.
    return CANARY if (slot * weight) % 100 < weight else BASELINE
