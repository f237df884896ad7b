from fastapi import FastAPI, WebSocket
from contextlib import asynccontextmanager
import uvicorn
import logging

import config
config.setup_logging()

from socket_manager import socket_manager

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    logger.info("Starting quiz battle server")
    yield
    socket_manager.shutdown()
    logger.info("Shutting down quiz battle server")


app = FastAPI(title="Quiz Battle Server", lifespan=lifespan)


@app.websocket("/ws/{client_id}")
async def websocket_endpoint(websocket: WebSocket, client_id: str):
    await socket_manager.connect(websocket, client_id)


@app.get("/")
async def root():
    return {"message": "Quiz battle server is running"}


if __name__ == "__main__":
    uvicorn.run("main:app", host=config.HOST, port=config.PORT, reload=True)
