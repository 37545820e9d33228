"""
Shared FastAPI dependencies.
"""

from typing import Annotated

from fastapi import Depends, HTTPException, Request, status

from taskqueue.services import QueueServices


def get_services(request: Request) -> QueueServices:
    """Services attached to the application at startup."""
    services: QueueServices | None = getattr(request.app.state, "services", None)
    if services is None:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Services not initialized",
        )
    return services


Services = Annotated[QueueServices, Depends(get_services)]
