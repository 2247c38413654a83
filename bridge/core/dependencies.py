"""FastAPI dependencies."""
from fastapi.requests import HTTPConnection

from bridge.services.runtime import BridgeRuntime


def get_runtime(connection: HTTPConnection) -> BridgeRuntime:
    """Get the bridge runtime built at application startup."""
    return connection.app.state.runtime
