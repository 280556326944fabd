class ErrorCodes:
    SUCCESS = 0
    ERR_NETWORK = 101
    ERR_SIGNALING_UNAVAILABLE = 102
    ERR_ROOM_LOOKUP = 103
    ERR_RATE_LIMITED = 104
    ERR_ROOM_FULL = 201
    ERR_INVALID_ROOM = 202
    ERR_INVALID_SIGNAL = 301
    ERR_ALREADY_NEGOTIATING = 302
    ERR_UNEXPECTED_ANSWER = 303
    ERR_CALL_SETUP_TIMEOUT = 304
    ERR_MEDIA_ACQUISITION = 401
    ERR_PROTOCOL = 402
    ERR_INTERNAL = 500


class CallError(Exception):
    """Base for every failure surfaced to the presentation layer.

    ``fatal`` errors end the session; the others drop a single event and
    leave the call running.
    """

    code = ErrorCodes.ERR_INTERNAL
    fatal = False

    def __init__(self, message, code=None):
        if code is not None:
            self.code = code
        self.message = message
        super().__init__(f"[{self.code}] {message}")


class InvalidSignal(CallError):
    code = ErrorCodes.ERR_INVALID_SIGNAL


class AlreadyNegotiating(CallError):
    code = ErrorCodes.ERR_ALREADY_NEGOTIATING


class UnexpectedAnswer(CallError):
    code = ErrorCodes.ERR_UNEXPECTED_ANSWER


class CallSetupTimeout(CallError):
    code = ErrorCodes.ERR_CALL_SETUP_TIMEOUT


class RoomFull(CallError):
    code = ErrorCodes.ERR_ROOM_FULL

    def __init__(self, room_id, capacity=2):
        self.room_id = room_id
        self.capacity = capacity
        super().__init__(f"Room {room_id} already has {capacity} participants")


class RoomLookupFailed(CallError):
    code = ErrorCodes.ERR_ROOM_LOOKUP


class MediaAcquisitionFailed(CallError):
    code = ErrorCodes.ERR_MEDIA_ACQUISITION
    fatal = True


class SignalingUnavailable(CallError):
    code = ErrorCodes.ERR_SIGNALING_UNAVAILABLE
    fatal = True
