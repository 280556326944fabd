from enum import Enum


class SignalingState(Enum):
    IDLE = "idle"
    HAVE_LOCAL_OFFER = "have-local-offer"
    HAVE_REMOTE_OFFER = "have-remote-offer"
    STABLE = "stable"
    CLOSED = "closed"


class IceConnectionState(Enum):
    NEW = "new"
    CHECKING = "checking"
    CONNECTED = "connected"
    COMPLETED = "completed"
    FAILED = "failed"
    DISCONNECTED = "disconnected"
    CLOSED = "closed"

    @classmethod
    def from_value(cls, value: str) -> "IceConnectionState":
        try:
            return cls(value)
        except ValueError:
            # Unknown backend states are treated as still negotiating
            return cls.CHECKING


class ConnectionHealth(Enum):
    CONNECTING = "connecting"
    CONNECTED = "connected"
    DEGRADED = "degraded"
    FAILED = "failed"
    CLOSED = "closed"


ALLOWED_TRANSITIONS = {
    SignalingState.IDLE: {
        SignalingState.HAVE_LOCAL_OFFER,
        SignalingState.HAVE_REMOTE_OFFER,
        SignalingState.CLOSED,
    },
    # IDLE is reachable from both offer states: glare rollback and a rejected remote offer.
    SignalingState.HAVE_LOCAL_OFFER: {
        SignalingState.STABLE,
        SignalingState.IDLE,
        SignalingState.CLOSED,
    },
    SignalingState.HAVE_REMOTE_OFFER: {
        SignalingState.STABLE,
        SignalingState.IDLE,
        SignalingState.CLOSED,
    },
    SignalingState.STABLE: {SignalingState.CLOSED},
    SignalingState.CLOSED: set(),
}


class InvalidTransition(RuntimeError):
    pass


class StateMachine:
    def __init__(self):
        self.current_state = SignalingState.IDLE

    def can_transition_to(self, new_state: SignalingState) -> bool:
        return new_state in ALLOWED_TRANSITIONS[self.current_state]

    def transition_to(self, new_state: SignalingState):
        if not self.can_transition_to(new_state):
            raise InvalidTransition(
                f"{self.current_state.value} -> {new_state.value} is not a legal transition"
            )
        self.current_state = new_state


def describe_health(signaling: SignalingState, ice: IceConnectionState) -> ConnectionHealth:
    """Collapses both state axes into the connected/degraded/failed view shown to users."""
    if signaling is SignalingState.CLOSED or ice is IceConnectionState.CLOSED:
        return ConnectionHealth.CLOSED
    if ice in (IceConnectionState.CONNECTED, IceConnectionState.COMPLETED):
        return ConnectionHealth.CONNECTED
    if ice is IceConnectionState.DISCONNECTED:
        return ConnectionHealth.DEGRADED
    if ice is IceConnectionState.FAILED:
        return ConnectionHealth.FAILED
    return ConnectionHealth.CONNECTING
