"""
配置数据模型定义 (config/schema.py)
=================================
本模块使用 Pydantic 定义 ccbridge 的完整配置结构。
所有配置项都有默认值，用户只需在 config.json 中覆盖需要修改的部分。

整体配置结构（树形）：
Config (根配置)
├── sessions        - 会话池配置（并发上限、持久化上限、超时、预算等）
├── notifications   - 通知路由配置（防抖间隔、长时间运行提醒等）
├── wake            - 代理唤醒配置（唤醒方式、CLI 路径、超时与重试）
├── claude          - Claude Code CLI 配置
└── agent_channels  - 工作区路径 → 渠道的映射表

对于 Java 开发者：
- Pydantic 的 BaseModel 类似于 Java 的 POJO/Record，但自带字段验证和默认值
- BaseSettings 类似于 Spring 的 @ConfigurationProperties，额外支持从环境变量读取配置
"""

from pathlib import Path
from typing import Literal

from pydantic import BaseModel, Field, ConfigDict
from pydantic_settings import BaseSettings


# ==============================================================================
# 会话池配置
# ==============================================================================


class SessionsConfig(BaseModel):
    """
    会话池配置。

    - max_sessions: 同时处于 starting/running 的会话上限
    - max_persisted_sessions: 已结束会话快照的保留上限（超出后按完成时间淘汰最旧的）
    - idle_timeout_minutes: 多轮会话无新消息、无回合结束时自动终止的时间窗口
    - stall_timeout_s: 事件流静默多久后视为"卡住"并发出待输入信号
    """
    max_sessions: int = 5  # 活跃会话并发上限
    max_persisted_sessions: int = 50  # 持久化快照上限
    default_model: str | None = None  # 未指定时使用 Claude CLI 自己的默认模型
    default_budget_usd: float = 5.0  # 单会话默认预算（美元）
    default_workdir: str = "~"  # 未指定时的工作目录
    permission_mode: str = "bypassPermissions"  # 传给 Claude CLI 的权限模式
    multi_turn: bool = True  # 新会话默认开启多轮对话
    idle_timeout_minutes: int = 30  # 多轮会话空闲超时（分钟）
    stall_timeout_s: float = 15.0  # 卡顿看门狗超时（秒）
    output_buffer_size: int = 200  # 每个会话保留的输出条数
    cleanup_max_age_s: int = 3600  # 已结束会话在内存池中的保留时长（秒）
    cleanup_interval_s: int = 300  # 周期性清理的间隔（秒）
    max_auto_responds: int = 10  # 编排 Agent 连续自动回复的上限


# ==============================================================================
# 通知配置
# ==============================================================================


class NotificationsConfig(BaseModel):
    """通知路由配置。"""
    debounce_ms: int = 500  # 前台流式文本的合并窗口（毫秒）
    waiting_debounce_s: float = 5.0  # 同一会话待输入唤醒的去重窗口（秒）
    long_running_threshold_s: int = 600  # 超过该时长的后台会话会收到一次提醒
    reminder_interval_s: int = 60  # 长时间运行扫描的间隔（秒）
    fallback_channel: str | None = None  # 原始渠道未知时的兜底渠道，如 "telegram|123456"


# ==============================================================================
# 代理唤醒配置
# ==============================================================================


class WakeConfig(BaseModel):
    """
    代理唤醒配置。

    mode:
    - "cli": 通过 openclaw CLI 子进程唤醒（定向唤醒或广播系统事件）
    - "bus": 通过进程内消息总线发布 system 渠道的入站消息
    """
    mode: Literal["cli", "bus"] = "cli"
    cli_path: str = "openclaw"  # openclaw 可执行文件
    timeout_s: float = 30.0  # 广播唤醒子进程的超时（秒）
    retry_delay_s: float = 5.0  # 广播唤醒失败后的重试延迟（秒）


class ClaudeConfig(BaseModel):
    """Claude Code CLI 配置。"""
    cli_path: str = "claude"  # claude 可执行文件
    extra_args: list[str] = Field(default_factory=list)  # 追加到每次启动的额外参数


# ==============================================================================
# 根配置类
# ==============================================================================


class Config(BaseSettings):
    """
    ccbridge 根配置类。

    继承自 Pydantic 的 BaseSettings，除了支持从 JSON 文件加载外，
    还支持从环境变量读取配置：
    - 环境变量前缀: CCBRIDGE_
    - 嵌套分隔符: __ (双下划线)
    - 示例: CCBRIDGE_SESSIONS__MAX_SESSIONS=3 可覆盖 sessions.max_sessions
    """
    sessions: SessionsConfig = Field(default_factory=SessionsConfig)
    notifications: NotificationsConfig = Field(default_factory=NotificationsConfig)
    wake: WakeConfig = Field(default_factory=WakeConfig)
    claude: ClaudeConfig = Field(default_factory=ClaudeConfig)
    # 工作区路径 → 渠道，例如 {"~/projects/api": "telegram|123456"}
    agent_channels: dict[str, str] = Field(default_factory=dict)

    @property
    def default_workdir_path(self) -> Path:
        """获取展开后的默认工作目录（将 ~ 展开为用户主目录）。"""
        return Path(self.sessions.default_workdir).expanduser()

    model_config = ConfigDict(
        env_prefix="CCBRIDGE_",
        env_nested_delimiter="__"
    )
