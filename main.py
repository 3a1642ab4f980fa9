from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from contextlib import asynccontextmanager
from sqlalchemy.orm import sessionmaker
from typing import Optional
import logging

from database import Base, Settings, build_engine, get_settings
from core.events import RoomEventBus
from core.spin_coordinator import SpinCoordinator
from core.store import RoomStore
from api import rooms, chat, spins, websocket


def create_app(settings: Optional[Settings] = None) -> FastAPI:
    settings = settings or get_settings()

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        # Startup: 設定 logging、建立資料表、建立 store 與 coordinator
        logging.basicConfig(
            level=settings.log_level.upper(),
            format="%(asctime)s - %(levelname)s - [%(name)s] - %(message)s",
        )
        engine = build_engine(settings.database_url)
        Base.metadata.create_all(bind=engine)

        app.state.settings = settings
        app.state.store = RoomStore(
            sessionmaker(autocommit=False, autoflush=False, bind=engine),
            bus=RoomEventBus(),
            code_generation_attempts=settings.code_generation_attempts,
        )
        app.state.coordinator = SpinCoordinator(
            app.state.store,
            spin_duration=settings.spin_duration_seconds,
            stale_spin_timeout=settings.stale_spin_timeout,
        )
        yield
        # Shutdown: 尚未完成的 settle 計時器會被取消，房間留在 spinning（等 reaper 或 reset）
        pending = app.state.coordinator.pending
        if pending:
            logging.getLogger(__name__).warning(f"Cancelling {pending} pending spin settle(s)")
        app.state.coordinator.cancel()
        engine.dispose()

    app = FastAPI(
        title="Wheel Room API",
        description="Backend API for shared multiplayer decision wheels",
        version="1.0.0",
        lifespan=lifespan
    )

    # CORS configuration
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],  # Configure this properly in production
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    # Include routers
    app.include_router(rooms.router)
    app.include_router(chat.router)
    app.include_router(spins.router)
    app.include_router(websocket.router)

    @app.get("/")
    def root():
        return {"message": "Wheel Room API", "status": "ok"}

    @app.get("/health")
    def health():
        return {"status": "healthy"}

    return app


app = create_app()


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=8000)
