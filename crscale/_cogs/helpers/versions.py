"""
Detecting the controller's own version.

The version is determined only once at startup when the code is loaded,
and is used to self-identify in the API requests' ``User-Agent`` header.
"""
import importlib.metadata

version: str | None = None

try:
    name, *_ = __name__.split('.')  # usually "crscale", unless renamed/forked.
    version = importlib.metadata.version(name)
except importlib.metadata.PackageNotFoundError:
    pass  # not installed, e.g. running from a source checkout.
