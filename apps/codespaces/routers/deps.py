from fastapi import Request

from ..services.container import Container


def get_container(request: Request) -> Container:
    """The Container built at application startup (see app.py)."""
    return request.app.state.container
