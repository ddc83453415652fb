import re

SESSION_ID_PATTERN = re.compile(r"^[A-Za-z0-9_-]{1,64}$")


def validate_session_id(session_id: str) -> bool:
    """
    Validates the shape of a shared session id:
    Length: 1-64
    Characters: A-Z, a-z, 0-9, '-', '_'
    Whether the session exists is only known to the signaling store.
    """
    if not session_id:
        return False
    return bool(SESSION_ID_PATTERN.match(session_id))


def validate_nickname(nickname: str, max_length: int = 32) -> bool:
    if not nickname or not nickname.strip():
        return False
    return len(nickname.strip()) <= max_length


def validate_message_length(message: str, max_length: int = 4000) -> bool:
    if not message:
        return False
    return len(message) <= max_length
