"""
ccbridge - Claude Code 后台会话编排框架

模块概述：
    本文件是 ccbridge 包的入口文件（__init__.py），定义了包的元信息。
    ccbridge 负责把外部的 Claude Code 进程包装成可在聊天渠道中托管的
    长时间运行"会话"，并把会话状态变化可靠地通知给观察者。

    整个框架的核心功能包括：
    - 有上限的会话池（启动、解析、终止、回收、持久化）
    - 多轮对话状态机（空闲超时、卡顿看门狗、待输入信号）
    - 通知路由（前台流式输出的防抖合并、里程碑消息的扇出）
    - 代理唤醒（完成/待输入时唤醒负责的编排 Agent）
"""

# 版本号，遵循语义化版本规范（主版本.次版本.修订号）
__version__ = "0.1.0"

# 项目 logo 表情符号，用于 CLI 输出等场景的品牌标识
__logo__ = "🛰️"
