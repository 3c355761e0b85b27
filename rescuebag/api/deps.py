"""
RescueBag — API dependencies
"""
from typing import Callable

from fastapi import HTTPException, Request, status

from rescuebag.core.session import SessionContext
from rescuebag.models.order import PaymentMethod
from rescuebag.services.container import Services

PollScheduler = Callable[[str, str, PaymentMethod], None]


def get_services(request: Request) -> Services:
    return request.app.state.services


def get_poll_scheduler(request: Request) -> PollScheduler:
    return request.app.state.poll_scheduler


def get_session(request: Request) -> SessionContext:
    session = getattr(request.state, "session", None)
    if session is None:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Not authenticated.")
    return session
