# utils/file_handler.py
import re
import shutil
import time
from pathlib import Path
from typing import Optional

class ReportFileStore:
    """上傳報告檔案的本機存放區"""

    def __init__(self, base_dir: Path):
        self.base_dir = Path(base_dir)

    def save(self, upload_file, user_id: str, suffix: Optional[str] = None) -> str:
        """
        保存上傳的檔案

        檔名格式為 {user_id}/{毫秒時間戳}.{副檔名}

        Returns:
            相對於存放目錄的路徑（存入報告的 file_url）
        """
        if suffix is None:
            suffix = Path(upload_file.filename or "").suffix

        # 用戶 ID 只用來分目錄，去掉路徑字元
        user_dir = self.base_dir / re.sub(r"[^\w\-]", "_", user_id)
        user_dir.mkdir(parents=True, exist_ok=True)

        target = user_dir / f"{int(time.time() * 1000)}{suffix}"
        with open(target, "wb") as out:
            shutil.copyfileobj(upload_file.file, out)

        return target.relative_to(self.base_dir).as_posix()

    def delete(self, file_url: str):
        """刪除 save() 寫入的檔案；檔案不存在時不做任何事"""
        (self.base_dir / file_url).unlink(missing_ok=True)
