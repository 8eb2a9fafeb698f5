"""
投资数据服务异常定义
封闭的错误集合，每类错误携带结构化上下文，便于日志与 HTTP 映射
"""

from typing import Optional


class InvestingError(Exception):
    """所有业务错误的基类"""

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class UpstreamUnavailable(InvestingError):
    """行情提供商 HTTP 错误或返回非 ok 状态"""

    def __init__(self, endpoint: str, detail: str, status: Optional[int] = None):
        self.endpoint = endpoint
        self.status = status
        self.detail = detail
        suffix = f"（HTTP {status}）" if status is not None else ""
        super().__init__(f"行情接口 {endpoint} 不可用{suffix}: {detail}")


class NotFound(InvestingError):
    """数据库中不存在所需的记录"""

    def __init__(self, resource: str, identifier: str):
        self.resource = resource
        self.identifier = identifier
        super().__init__(f"{resource} 不存在: {identifier}")


class PersistenceFailure(InvestingError):
    """行情数据回写数据库失败（仅记录日志，不向调用方抛出）"""

    def __init__(self, stock_id: str, cause: BaseException):
        self.stock_id = stock_id
        self.cause = cause
        super().__init__(f"价格回写失败 stock_id={stock_id}: {cause}")


class BackgroundRefreshFailure(InvestingError):
    """stale-while-revalidate 后台刷新失败（仅记录日志）"""

    def __init__(self, key: str, cause: BaseException):
        self.key = key
        self.cause = cause
        super().__init__(f"后台刷新失败 {key}: {cause}")


class InsufficientQuantity(InvestingError):
    """卖出数量超过可用买入批次"""

    def __init__(self, stock_id: str, requested: float, available: float):
        self.stock_id = stock_id
        self.requested = requested
        self.available = available
        super().__init__(
            f"卖出数量 {requested} 超过可用数量 {available}（stock_id={stock_id}）"
        )
