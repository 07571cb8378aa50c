import argparse
import asyncio
import contextlib
import logging
import sys
from typing import Optional

from fastapi import FastAPI, Request
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

from app.api.routers.ml import router as ml_router
from app.core.config import settings
from app.services.ml import MLServices, services_from_settings
from core.config import load_config
from core.exceptions import InputError, MLPipelineError

logger = logging.getLogger(__name__)


@contextlib.asynccontextmanager
async def lifespan(app: FastAPI):
    if app.state.ml is None:
        app.state.ml = services_from_settings(settings.ML_CONFIG_PATH, settings.DATA_DIR)
    if settings.ML_WARM_UP_ON_STARTUP:
        await app.state.ml.inference.warm_up()

    scheduler = None
    if settings.ML_SCHEDULER_INTERVAL_SECONDS > 0:
        scheduler = asyncio.create_task(
            app.state.ml.auto_trainer.run_scheduler(settings.ML_SCHEDULER_INTERVAL_SECONDS)
        )
    try:
        yield
    finally:
        if scheduler is not None:
            scheduler.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await scheduler


def create_app(services: Optional[MLServices] = None) -> FastAPI:
    app = FastAPI(title="ML Pipeline API", lifespan=lifespan)
    app.state.ml = services

    @app.exception_handler(RequestValidationError)
    async def on_validation_error(request: Request, exc: RequestValidationError):
        return JSONResponse(
            status_code=400,
            content={"success": False, "error": "Invalid request", "detail": jsonable_encoder(exc.errors())},
        )

    @app.exception_handler(InputError)
    async def on_input_error(request: Request, exc: InputError):
        return JSONResponse(status_code=400, content={"success": False, "error": str(exc)})

    app.include_router(ml_router)
    return app


app = create_app()


def build_parser() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(prog="ml_pipeline_api")
    p.add_argument("--config", default=None, help="Path to ml.yaml (defaults under DATA_DIR otherwise)")
    p.add_argument("--host", default="127.0.0.1")
    p.add_argument("--port", type=int, default=8000)
    return p


def main(argv: list[str] | None = None) -> int:
    args = build_parser().parse_args(argv)

    try:
        if args.config:
            load_config(args.config)
            settings.ML_CONFIG_PATH = args.config

        try:
            import uvicorn  # type: ignore
        except ModuleNotFoundError as e:
            raise MLPipelineError(
                "uvicorn is not installed. Install the server extra (`pip install .[server]`) to run the API."
            ) from e

        uvicorn.run("app.main:app", host=args.host, port=args.port, reload=False)
        return 0
    except MLPipelineError as e:
        print(f"ERROR: {e}", file=sys.stderr)
        return 2


if __name__ == "__main__":
    raise SystemExit(main())
