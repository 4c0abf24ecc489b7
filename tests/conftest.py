"""
Shared fixtures for relay tests.

Connection doubles are MagicMock(spec=WebSocket) objects with async send
methods and both socket states set to CONNECTED.
"""

from unittest.mock import AsyncMock, MagicMock

import pytest
from fastapi import WebSocket
from starlette.websockets import WebSocketState

from broker import ConnectionRegistry, RoomRouter


def create_mock_websocket(state: WebSocketState = WebSocketState.CONNECTED):
    ws_mock = MagicMock(spec=WebSocket)
    ws_mock.send_json = AsyncMock()
    ws_mock.client_state = state
    ws_mock.application_state = state
    return ws_mock


@pytest.fixture
def make_ws():
    return create_mock_websocket


@pytest.fixture
def registry():
    return ConnectionRegistry()


@pytest.fixture
def router(registry):
    return RoomRouter(registry)
