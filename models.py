from datetime import datetime

from sqlalchemy import (
    Column,
    Date,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    Numeric,
    String,
    Text,
    func,
)
from sqlalchemy.orm import declarative_base, relationship
from werkzeug.security import check_password_hash, generate_password_hash

Base = declarative_base()

# 保留账号名与角色名：初始化数据、权限判断与测试共同依赖这几个字面量
SUPERADMIN_USERNAME = "superadmin"
ROLE_USER = "User"
ROLE_ADMIN = "Admin"


def is_superadmin_name(username) -> bool:
    """判断用户名是否为保留的超级管理员账号（忽略大小写）。"""
    if not username:
        return False
    return str(username).strip().casefold() == SUPERADMIN_USERNAME


class User(Base):
    """用户表。"""

    __tablename__ = "users"
    # 自增主键，已删除用户的 id 不会被新用户复用
    __table_args__ = {"sqlite_autoincrement": True}

    id = Column(Integer, primary_key=True)
    username = Column(String(50), unique=True, nullable=False, index=True, comment="登录用户名")
    password_hash = Column(String(256), nullable=False, comment="密码哈希")
    created_at = Column(DateTime, default=datetime.now, nullable=False, comment="注册时间")
    # 角色或密码被管理员修改时递增，使旧会话失效
    session_version = Column(Integer, nullable=False, default=1, comment="会话版本")

    user_roles = relationship("UserRole", back_populates="user", cascade="all, delete-orphan")
    user_menus = relationship("UserMenu", back_populates="user", cascade="all, delete-orphan")
    expenses = relationship("Expense", back_populates="user", cascade="all, delete-orphan")

    def set_password(self, password: str) -> None:
        self.password_hash = generate_password_hash(password)

    def check_password(self, password: str) -> bool:
        if not self.password_hash:
            return False
        return check_password_hash(self.password_hash, password)

    def invalidate_sessions(self) -> None:
        """让已签发的会话在下一次请求时失效。"""
        self.session_version = (self.session_version or 1) + 1

    @property
    def role_names(self) -> list[str]:
        return sorted({ur.role.role_name for ur in self.user_roles if ur.role is not None})

    @property
    def is_superadmin(self) -> bool:
        return is_superadmin_name(self.username)

    @property
    def is_admin(self) -> bool:
        return ROLE_ADMIN in self.role_names

    def __repr__(self) -> str:  # pragma: no cover - debug only
        return f"<User id={self.id} username={self.username}>"


class Role(Base):
    """角色表，规范值为 "User" 与 "Admin"。"""

    __tablename__ = "roles"

    id = Column(Integer, primary_key=True)
    role_name = Column(String(50), unique=True, nullable=False, comment="角色名")

    user_roles = relationship("UserRole", back_populates="role", cascade="all, delete-orphan")

    def __repr__(self) -> str:  # pragma: no cover - debug only
        return f"<Role id={self.id} name={self.role_name}>"


class UserRole(Base):
    """
    用户-角色关联。
    复合主键保证同一用户不会重复持有同一角色。
    """

    __tablename__ = "user_roles"

    user_id = Column(Integer, ForeignKey("users.id", ondelete="CASCADE"), primary_key=True)
    role_id = Column(Integer, ForeignKey("roles.id", ondelete="CASCADE"), primary_key=True)

    user = relationship("User", back_populates="user_roles")
    role = relationship("Role", back_populates="user_roles")


class Menu(Base):
    """导航菜单项。"""

    __tablename__ = "menus"

    id = Column(Integer, primary_key=True)
    title = Column(String(100), unique=True, nullable=False, comment="菜单标题")
    url = Column(String(256), nullable=False, comment="跳转地址")

    user_menus = relationship("UserMenu", back_populates="menu", cascade="all, delete-orphan")

    def __repr__(self) -> str:  # pragma: no cover - debug only
        return f"<Menu id={self.id} title={self.title}>"


class UserMenu(Base):
    """用户可见菜单的授权关系，复合主键防止重复授权。"""

    __tablename__ = "user_menus"

    user_id = Column(Integer, ForeignKey("users.id", ondelete="CASCADE"), primary_key=True)
    menu_id = Column(Integer, ForeignKey("menus.id", ondelete="CASCADE"), primary_key=True)

    user = relationship("User", back_populates="user_menus")
    menu = relationship("Menu", back_populates="user_menus")


class Expense(Base):
    """
    支出记录表。
    """

    __tablename__ = "expenses"

    id = Column(Integer, primary_key=True)
    # 所属用户，创建时取自登录身份，不接受客户端传值
    user_id = Column(
        Integer, ForeignKey("users.id", ondelete="CASCADE"), index=True, nullable=False, comment="用户 ID"
    )
    description = Column(String(100), nullable=False, comment="描述")
    # 金额（正数，两位小数）
    amount = Column(Numeric(18, 2), nullable=False, comment="金额")
    category = Column(String(50), index=True, nullable=False, comment="分类")
    # 消费日期（按天）
    date = Column(Date, index=True, nullable=False, comment="消费日期")
    notes = Column(Text, nullable=True, comment="备注")
    # 记录创建时间（系统时间）
    created_at = Column(DateTime, default=datetime.now, nullable=False, comment="创建时间")
    # 乐观锁版本号
    version = Column(Integer, nullable=False, default=1)

    user = relationship("User", back_populates="expenses")

    __mapper_args__ = {"version_id_col": version}

    def __repr__(self) -> str:
        return f"<Expense id={self.id} date={self.date} amount={self.amount} cat={self.category}>"


# 复合索引：优化“按用户+日期”的范围查询
Index("idx_expenses_user_date", Expense.user_id, Expense.date)

# 用户名忽略大小写唯一
Index("uq_users_username_lower", func.lower(User.username), unique=True)
