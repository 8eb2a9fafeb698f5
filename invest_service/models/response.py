"""统一 API 响应信封 {success, data, message, error}"""

from typing import Any, Optional

from fastapi.responses import JSONResponse
from pydantic import BaseModel


class ApiResponse(BaseModel):
    """所有业务接口的响应封装；错误由异常处理器统一生成"""
    success: bool = True
    data: Optional[Any] = None
    message: str = ""
    error: Optional[str] = None

    @classmethod
    def ok(cls, data: Any = None, message: str = "success") -> "ApiResponse":
        return cls(success=True, data=data, message=message)

    @classmethod
    def fail(cls, error: str, message: str = "failed") -> "ApiResponse":
        return cls(success=False, error=error, message=message)

    def to_json(self, status_code: int) -> JSONResponse:
        """渲染为带状态码的 JSON 响应（供异常处理器使用）"""
        return JSONResponse(status_code=status_code, content=self.model_dump())
