from buddymatch.errors import InvalidInput

PAIR_KEY_SEPARATOR = "_"


def canonicalize(user_a: str, user_b: str) -> str:
    """Order-independent key for an unordered pair of users.

    The smaller id always comes first, so both sides of a simultaneous
    request end up on the same guard document.
    """
    if not user_a or not user_b:
        raise InvalidInput("Both user ids are required")
    if user_a == user_b:
        raise InvalidInput("A user cannot be paired with themselves")
    first, second = sorted((user_a, user_b))
    return f"{first}{PAIR_KEY_SEPARATOR}{second}"
