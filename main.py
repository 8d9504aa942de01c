"""FastAPI 应用入口：挂载算数解说 API。"""
import logging

from fastapi import FastAPI

from api.routes import get_provider, router

# 配置日志：便于查看各阶段的模型、分块、耗时与回退路径
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
    datefmt="%Y-%m-%d %H:%M:%S",
)
# 降低 uvicorn 访问日志噪音，业务日志仍为 INFO
logging.getLogger("uvicorn.access").setLevel(logging.WARNING)

app = FastAPI(title="算数文章題ステップ解説", version="0.3.0")


@app.on_event("shutdown")
async def shutdown():
    if get_provider.cache_info().currsize:
        await get_provider().aclose()


app.include_router(router, prefix="/api", tags=["solver"])
