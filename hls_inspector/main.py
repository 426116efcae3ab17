import logging

from fastapi import FastAPI

from hls_inspector.configs import settings
from hls_inspector.routes import inspect_router

logging.basicConfig(level=settings.log_level, format="%(asctime)s - %(name)s - %(levelname)s - %(message)s")
app = FastAPI(title="HLS Inspector", root_path=settings.base_path)


@app.get("/health")
async def health_check():
    return {"status": "healthy"}


app.include_router(inspect_router, prefix="/inspect", tags=["inspect"])


def run():
    import uvicorn

    uvicorn.run(app, host="0.0.0.0", port=8888, log_level="info")


if __name__ == "__main__":
    run()
