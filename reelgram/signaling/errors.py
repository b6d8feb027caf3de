class SignalingError(Exception):
    """Base class for signaling failures."""


class RoomNotFound(SignalingError):
    """A room id that has no participants (broadcasts to it are no-ops)."""


class RoomAccessDenied(SignalingError):
    """The room access policy refused a join."""


class MediaAcquisitionFailed(SignalingError):
    """Local media could not be acquired; the negotiation attempt is aborted."""


class StaleNegotiationMessage(SignalingError):
    """An offer/answer that arrived for a negotiation already past that step."""


class TransportUnavailable(SignalingError):
    """Neither the realtime relay nor the fallback channel can be used."""
