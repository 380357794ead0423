from typing import Optional

from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker

from config.models import Base
from config.settings import settings


def create_session_factory(database_url: Optional[str] = None) -> sessionmaker:
    """建立 engine 與 sessionmaker，並確保資料表存在"""
    url = database_url or settings.resolved_database_url
    connect_args = {}
    if url.startswith("sqlite"):
        # 健康摘要會在多個工作執行緒中並行讀取
        connect_args["check_same_thread"] = False

    engine = create_engine(url, connect_args=connect_args, pool_pre_ping=True)
    Base.metadata.create_all(bind=engine)
    return sessionmaker(autocommit=False, autoflush=False, expire_on_commit=False, bind=engine)
