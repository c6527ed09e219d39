"""HTTP surface of the studio service."""

from studiolink.api.app import create_app

__all__ = ["create_app"]
