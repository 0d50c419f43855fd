from __future__ import annotations


class ValidationError(ValueError):
    """Input rejected before any side effect."""


class NotFoundError(LookupError):
    pass


class UpstreamUnavailable(RuntimeError):
    """The article source or the user preference store could not be reached."""

    def __init__(self, component: str, detail: str) -> None:
        super().__init__(f"{component} unavailable: {detail}")
        self.component = component
        self.detail = detail


class ChannelDeliveryError(RuntimeError):
    def __init__(self, channel: str, detail: str) -> None:
        super().__init__(f"{channel}: {detail}")
        self.channel = channel
        self.detail = detail
