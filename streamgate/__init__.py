"""streamgate - Device access gatekeeper for a media-streaming server."""

__version__ = "0.1.0"
