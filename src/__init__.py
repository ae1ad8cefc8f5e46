"""devcontainer-fetch — verified toolchain downloads for dev container builds."""

__version__ = "0.1.0"
