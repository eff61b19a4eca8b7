# memoir_voice/api/deps.py
from fastapi import Request

from memoir_voice.services import Services


def get_services(request: Request) -> Services:
    """Service container created at startup (or injected by create_app)."""
    return request.app.state.services
