from __future__ import annotations

from fastapi import Request

from ..config import Settings
from ..infrastructure.message_store import MessageStore
from ..services.broadcast_hub import BroadcastHub
from ..services.providers.registry import ProviderRegistry
from ..services.stream_coordinator import StreamCoordinator
from ..services.telemetry_logger import TelemetryLogger


def get_settings(request: Request) -> Settings:
    return request.app.state.settings


def get_store(request: Request) -> MessageStore:
    return request.app.state.store


def get_coordinator(request: Request) -> StreamCoordinator:
    return request.app.state.coordinator


def get_hub(request: Request) -> BroadcastHub:
    return request.app.state.hub


def get_telemetry(request: Request) -> TelemetryLogger:
    return request.app.state.telemetry


def get_providers(request: Request) -> ProviderRegistry:
    return request.app.state.providers
