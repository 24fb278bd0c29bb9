from fastapi import Depends, Request

from .container import ApplicationContainer
from ..application.services.auth_service import AuthService


def get_container(request: Request) -> ApplicationContainer:
    container = getattr(request.app.state, "container", None)
    if not container:
        raise RuntimeError("Application container not initialised.")
    return container


def get_auth_service(container: ApplicationContainer = Depends(get_container)) -> AuthService:
    return container.auth_service
