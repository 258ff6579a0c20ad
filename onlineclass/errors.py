from fastapi import HTTPException


# 未登录
class AuthenticationRequired(HTTPException):
    def __init__(self, detail: str = "未登录或登录已过期"):
        super().__init__(status_code=401, detail=detail, headers={"WWW-Authenticate": "Bearer"})


# 已登录但角色不足
class PermissionDenied(HTTPException):
    def __init__(self, detail: str = "没有权限执行该操作"):
        super().__init__(status_code=403, detail=detail)


class ValidationFailed(HTTPException):
    def __init__(self, detail: str):
        super().__init__(status_code=400, detail=detail)


class NotFound(HTTPException):
    def __init__(self, detail: str):
        super().__init__(status_code=404, detail=detail)


# 重复操作：已加入、已提交、邀请码已使用等
class Conflict(HTTPException):
    def __init__(self, detail: str):
        super().__init__(status_code=409, detail=detail)


INTERNAL_ERROR_DETAIL = "服务器内部错误，请稍后再试"
