"""
datespine REST API.

Manifesto:
    The HTTP surface is a thin transport over ``AvailabilityService``:
    validation, cancellation and error mapping live here, caching and
    bitmaps do not.

Tags:
    datespine, api, FastAPI, REST

Doc-Types:
    api-reference
"""

from datespine.api.app import create_app

__all__ = ["create_app"]
