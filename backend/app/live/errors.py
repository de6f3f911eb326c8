"""Error types raised by the signaling collaborators."""


class SignalingError(Exception):
    """Base class for failures inside the matching and call-signaling core."""


class MediaAcquisitionError(SignalingError):
    """Local camera or microphone could not be acquired (e.g. permission denied)."""


class EndpointError(SignalingError):
    """The call transport could not provide an endpoint identity."""


class CallTransportError(SignalingError):
    """Placing, answering, or messaging over a media call failed."""


class DeliveryError(SignalingError):
    """A message could not be published on the messaging bus."""
