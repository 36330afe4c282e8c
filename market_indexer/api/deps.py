from fastapi import Request

from market_indexer.core.services import Services


def get_services(request: Request) -> Services:
    """Per-process components built in the lifespan and stored on app.state."""
    return request.app.state.services
