"""
orchestra - 桌面 AI 助手的对话编排核心

模块概述：
    本文件是 orchestra 包的入口文件（__init__.py），定义了包的元信息。
    orchestra 负责驱动一次完整的"模型对话 + 工具调用"流程：

    - 消息历史管理：窗口裁剪、孤立工具消息剔除、外部持久化
    - 流式模型适配：多家服务商的增量输出统一为一种事件模型
    - 工具分发路由：插件 / 知识库 / 工作流 / 子 Agent / 技能 / MCP / 内置工具
    - 知识库相似度检索：文本分块、向量化、余弦相似度搜索
    - Agent 循环控制：ReAct 与 Plan-Execute 两种模式
"""

# 版本号，遵循语义化版本规范（主版本.次版本.修订号）
__version__ = "0.1.0"

# 项目 logo 表情符号，用于 CLI 输出等场景的品牌标识
__logo__ = "🎼"
