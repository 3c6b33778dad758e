import os
from contextlib import asynccontextmanager
from pathlib import Path

from dotenv import load_dotenv
from fastapi import FastAPI
from fastapi.responses import HTMLResponse

from scenecast import config as app_config
from scenecast.display import SceneBoard
from scenecast.images import ImageCache
from scenecast.llm import LLM, HttpLLM
from scenecast.pipeline import TurnPipeline
from scenecast.presentation import wrap_document
from scenecast.routes import router
from scenecast.storage import Storage

load_dotenv(Path(__file__).parent.parent / ".env")

DEFAULT_DATA_DIR = Path(__file__).parent.parent / "data"


def create_app(
    data_dir: Path | None = None,
    llm: LLM | None = None,
    images: ImageCache | None = None,
) -> FastAPI:
    """Wire storage, engine, image cache and pipeline into one app.

    `llm` and `images` default to the configured HTTP backends; tests
    pass stand-ins.
    """
    resolved = data_dir or Path(os.getenv("DATA_DIR", str(DEFAULT_DATA_DIR)))
    storage = Storage(resolved)
    config = app_config.get_config(resolved)

    if llm is None:
        llm = HttpLLM(
            provider_url=config["provider_url"],
            api_key=config["api_key"],
            provider_format=config["provider_format"],
            model=config["model"],
            timeout=float(config["llm_timeout"]),
        )
    if images is None:
        images = ImageCache(
            storage.images_dir,
            storage,
            endpoint=config["image_endpoint"],
            width=int(config["image_width"]),
            height=int(config["image_height"]),
            connect_timeout=float(config["image_connect_timeout"]),
            read_timeout=float(config["image_read_timeout"]),
        )
    board = SceneBoard(image_endpoint=images.endpoint)
    pipeline = TurnPipeline(
        storage=storage,
        llm=llm,
        images=images,
        display=board,
        prompt_templates=config["prompt_templates"],
    )

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        # Re-show a saved game and re-check its images
        pipeline.resume()
        yield
        await images.drain()

    app = FastAPI(title="SceneCast", lifespan=lifespan)
    app.state.data_dir = resolved
    app.state.storage = storage
    app.state.pipeline = pipeline
    app.state.images = images
    app.state.board = board
    app.include_router(router, prefix="/api")

    # The page the player sees: the scene currently on the board.
    @app.get("/", response_class=HTMLResponse)
    async def scene_page():
        return HTMLResponse(board.html or wrap_document(pipeline.session.current_markup))

    return app
