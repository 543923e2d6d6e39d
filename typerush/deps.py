from fastapi import Request
from sqlmodel import Session

from .config import Policy


def get_session(request: Request):
    # one session per request, bound to the engine created at startup
    with Session(request.app.state.engine) as session:
        yield session


def get_policy(request: Request) -> Policy:
    return request.app.state.policy
