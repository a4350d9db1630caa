"""业务异常分类，由路由层统一转换为 HTTP 响应。"""

from typing import Iterable, Mapping, Optional


class TrackerError(Exception):
    """所有业务异常的基类。"""

    status_code = 500
    message = "Internal Server Error"

    def __init__(self, message: Optional[str] = None) -> None:
        super().__init__(message or self.message)
        if message:
            self.message = message

    def to_dict(self) -> dict:
        return {"error": self.message}


class ValidationError(TrackerError):
    """字段级校验失败，表单可带错误信息重新展示，不落库。"""

    status_code = 400
    message = "Validation failed"

    def __init__(self, errors: Mapping[str, Iterable[str]], message: Optional[str] = None) -> None:
        super().__init__(message)
        self.errors = {field: list(msgs) for field, msgs in errors.items()}

    @classmethod
    def single(cls, field: str, message: str) -> "ValidationError":
        return cls({field: [message]})

    def to_dict(self) -> dict:
        return {"error": self.message, "errors": self.errors}


class NotFoundError(TrackerError):
    """记录不存在或不在调用者可见范围内，两种情况对外不作区分。"""

    status_code = 404
    message = "Not found"


class ConflictError(TrackerError):
    """乐观锁冲突且目标记录仍然存在。"""

    status_code = 409
    message = "The record was modified by another request. Please reload and try again."


class StorageFault(TrackerError):
    """其他持久化故障；事务已回滚，可重试。"""

    status_code = 503
    message = "A storage error occurred. Please try again."

    def to_dict(self) -> dict:
        return {"error": self.message, "retryable": True}


class AuthzDenied(TrackerError):
    status_code = 403
    message = "Access denied"


class LoginRequired(AuthzDenied):
    """未登录：重定向到登录页。"""

    status_code = 401
    message = "Login required"


class AccessDenied(AuthzDenied):
    """已登录但权限层级不足。"""

    status_code = 403
    message = "Access denied"
