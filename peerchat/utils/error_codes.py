class ErrorCodes:
    SUCCESS = 0
    ERR_SIGNALING = 101
    ERR_RECORD_NOT_FOUND = 102
    ERR_FIELD_CONFLICT = 103
    ERR_HANDSHAKE = 201
    ERR_NEGOTIATION_TIMEOUT = 202
    ERR_SESSION_NOT_FOUND = 302
    ERR_SESSION_TAKEN = 304
    ERR_INVALID_STATE = 305
    ERR_INTERNAL = 500


class PeerChatError(Exception):
    code = ErrorCodes.ERR_INTERNAL

    def __init__(self, message, code=None):
        if code is not None:
            self.code = code
        self.message = message
        super().__init__(f"[{self.code}] {message}")


class SignalingUnavailable(PeerChatError):
    """The signaling store could not be reached or refused the operation."""
    code = ErrorCodes.ERR_SIGNALING


class RecordNotFound(PeerChatError):
    code = ErrorCodes.ERR_RECORD_NOT_FOUND


class FieldConflict(PeerChatError):
    """A record field that already holds a value was written again."""
    code = ErrorCodes.ERR_FIELD_CONFLICT


class SessionNotFound(PeerChatError):
    code = ErrorCodes.ERR_SESSION_NOT_FOUND


class HandshakeFailed(PeerChatError):
    code = ErrorCodes.ERR_HANDSHAKE


class InvalidStateTransition(PeerChatError):
    code = ErrorCodes.ERR_INVALID_STATE
