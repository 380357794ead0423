# main.py
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from config.settings import settings
from config.models import ReportCategory
from routes import health_router, user_router
from utils.error_handler import register_error_handlers
import logging

# 設定日誌
logging.basicConfig(level=settings.log_level)
logger = logging.getLogger(__name__)

# 初始化 FastAPI
app = FastAPI(title="健康数据汇总与趋势 API")

# CORS
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# 統一錯誤格式
register_error_handlers(app)

# 註冊路由
app.include_router(health_router, prefix="/health", tags=["health"])
app.include_router(user_router, prefix="/user", tags=["user"])

@app.get("/")
async def root():
    return {
        "message": "健康数据汇总 API 運行中",
        "analyzer_model": settings.model_name,
        "report_types": [c.value for c in ReportCategory],
    }

@app.get("/health")
async def health():
    return {"status": "healthy"}

if __name__ == "__main__":
    import uvicorn
    uvicorn.run(
        app,
        host=settings.api_host,
        port=settings.api_port
    )
