"""
FastAPI dependencies

RoomStore 與 SpinCoordinator 在 lifespan 建立並掛在 app.state 上，
測試可以直接替換 app.state 或用 dependency_overrides。
"""
from fastapi import Request

from core.spin_coordinator import SpinCoordinator
from core.store import RoomStore
from database import Settings


def get_store(request: Request) -> RoomStore:
    return request.app.state.store


def get_coordinator(request: Request) -> SpinCoordinator:
    return request.app.state.coordinator


def get_app_settings(request: Request) -> Settings:
    return request.app.state.settings
