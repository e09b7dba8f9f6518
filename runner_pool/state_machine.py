ALLOWED_TRANSITIONS: dict[str, set[str]] = {
    "creating": {"free", "in_use", "destroying"},
    "free": {"in_use", "destroying"},
    "in_use": {"destroying"},
    "destroying": {"gone"},
    "gone": set(),
}


def can_transition(current: str, target: str) -> bool:
    if current == target:
        return True
    return target in ALLOWED_TRANSITIONS.get(current, set())
