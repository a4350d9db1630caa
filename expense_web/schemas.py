"""
表单输入模型。

所有外部输入先经过这里的 pydantic 模型校验，失败时统一转换为
字段级的 ValidationError，保证不合法的数据不会写入数据库。
"""

import datetime as dt
from decimal import Decimal
from typing import Any, Mapping, Optional, Type, TypeVar

from pydantic import BaseModel, ConfigDict, Field, model_validator
from pydantic import ValidationError as PydanticValidationError

from expense_web.errors import ValidationError

FormT = TypeVar("FormT", bound="FormModel")

# (字段, 错误类型) -> 提示语；未列出的使用 pydantic 默认信息
_MESSAGES = {
    ("description", "missing"): "Description is required",
    ("description", "string_too_long"): "Description cannot be longer than 100 characters",
    ("amount", "missing"): "Amount is required",
    ("amount", "greater_than"): "Amount must be greater than 0",
    ("amount", "decimal_parsing"): "Amount must be a number",
    ("amount", "decimal_max_places"): "Amount cannot have more than 2 decimal places",
    ("category", "missing"): "Category is required",
    ("category", "string_too_long"): "Category cannot be longer than 50 characters",
    ("date", "missing"): "Date is required",
    ("notes", "string_too_long"): "Notes cannot be longer than 500 characters",
    ("username", "missing"): "Username is required",
    ("username", "string_too_long"): "Username cannot be longer than 50 characters",
    ("password", "missing"): "Password is required",
    ("password", "string_too_short"): "Password must be at least 6 characters",
    ("new_password", "string_too_short"): "Password must be at least 6 characters",
    ("title", "missing"): "Title is required",
    ("url", "missing"): "Url is required",
}


class FormModel(BaseModel):
    model_config = ConfigDict(str_strip_whitespace=True, extra="ignore")

    @model_validator(mode="before")
    @classmethod
    def drop_blank_values(cls, data: Any) -> Any:
        # 表单中的空字符串按“未填写”处理
        if isinstance(data, Mapping):
            return {
                k: v
                for k, v in data.items()
                if not (isinstance(v, str) and not v.strip())
            }
        return data


class ExpenseForm(FormModel):
    description: str = Field(max_length=100)
    amount: Decimal = Field(gt=0, max_digits=18, decimal_places=2)
    category: str = Field(max_length=50)
    date: dt.date
    notes: Optional[str] = Field(default=None, max_length=500)


class RegisterForm(FormModel):
    username: str = Field(max_length=50)
    password: str = Field(min_length=6, max_length=100)


class LoginForm(FormModel):
    username: str
    password: str


class UsernameForm(FormModel):
    username: str = Field(max_length=50)


class PasswordChangeForm(FormModel):
    current_password: str
    new_password: str = Field(min_length=6, max_length=100)


class PasswordResetForm(FormModel):
    new_password: str = Field(min_length=6, max_length=100)


class MenuForm(FormModel):
    title: str = Field(max_length=100)
    url: str = Field(max_length=256)


INVALID_FORM = "Invalid form data"


def _as_mapping(data) -> dict:
    if data is None:
        return {}
    if hasattr(data, "to_dict"):
        return data.to_dict()
    if isinstance(data, Mapping):
        return dict(data)
    # JSON 数组、字符串等非对象请求体
    raise ValidationError.single("__all__", INVALID_FORM)


def parse_form(form_cls: Type[FormT], data) -> FormT:
    """校验输入并返回表单模型；失败时抛出字段级 ValidationError。"""
    try:
        return form_cls.model_validate(_as_mapping(data))
    except PydanticValidationError as exc:
        errors: dict[str, list[str]] = {}
        for err in exc.errors():
            field = str(err["loc"][0]) if err.get("loc") else "__all__"
            msg = _MESSAGES.get((field, err["type"]), err["msg"])
            errors.setdefault(field, []).append(msg)
        raise ValidationError(errors) from exc


class DateRangeQuery(FormModel):
    start_date: Optional[dt.date] = None
    end_date: Optional[dt.date] = None
    admin_view: bool = True


class ExpenseView(BaseModel):
    """支出记录的对外表示。"""

    model_config = ConfigDict(from_attributes=True)

    id: int
    user_id: int
    description: str
    amount: Decimal
    category: str
    date: dt.date
    notes: Optional[str] = None
    created_at: Optional[dt.datetime] = None


class UserView(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    username: str
    created_at: Optional[dt.datetime] = None
    role_names: list[str] = []


class MenuView(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    title: str
    url: str
