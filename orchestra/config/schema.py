"""
配置数据模型定义 (config/schema.py)
=================================
本模块使用 Pydantic 定义 orchestra 的完整配置结构。
所有配置项都有默认值，用户只需在 config.json 中覆盖需要修改的部分。

整体配置结构（树形）：
Config (根配置)
├── agents        - Agent 默认参数 + 具名的 Agent 配置（子 Agent 也在这里声明）
├── providers     - 模型服务商配置（API Key、API Base URL 等）
├── knowledge     - 知识库配置（嵌入模型、相似度阈值、返回条数、分块大小）
├── models        - 辅助模型（视觉模型、图像生成模型及其轮询参数）
├── tools         - 工具配置（MCP 服务器、技能目录）
└── storage       - 持久化目录
"""

from pathlib import Path

from pydantic import BaseModel, ConfigDict, Field
from pydantic_settings import BaseSettings


# ==============================================================================
# Agent 配置
# ==============================================================================


class AgentProfile(BaseModel):
    """
    单个 Agent 的配置（系统提示词、模型、可用能力）。

    空值字段在 Config.resolve_profile() 中由 agents.defaults 补齐。
    能力列表中的元素都是各命名空间下的 ID：
    - tools: 插件 ID 或组合工具名（如 "search-web_plugin"）
    - knowledges / workflows / agents / skills: 对应实体 ID
    - mcp: MCP 服务器名称
    """
    id: str = "default"
    name: str = ""
    description: str = ""  # 作为子 Agent 被调用时展示给模型的描述
    system_prompt: str = ""
    model: str = ""  # 为空时使用 agents.defaults.model
    provider: str | None = None  # 显式指定服务商（为空时按模型名匹配）
    mode: str = ""  # "react" | "plan"，为空时使用默认模式
    temperature: float | None = None
    max_history: int | None = None
    max_iterations: int | None = None
    tools: list[str] = Field(default_factory=list)
    knowledges: list[str] = Field(default_factory=list)
    workflows: list[str] = Field(default_factory=list)
    agents: list[str] = Field(default_factory=list)
    skills: list[str] = Field(default_factory=list)
    mcp: list[str] = Field(default_factory=list)
    vision: bool = False  # 是否启用内置 VISION 工具
    image: bool = False  # 是否启用内置 IMAGE 工具


class AgentDefaults(BaseModel):
    """
    Agent 默认配置。

    - max_history: 发送给模型的历史窗口大小（0 表示不限制）
    - max_iterations: ReAct 最大迭代次数 / Plan-Execute 最大步骤数
    """
    model: str = "gpt-4o-mini"
    provider: str | None = None
    system_prompt: str = ""
    mode: str = "react"
    temperature: float = 1.0
    max_history: int = 0
    max_iterations: int = 10


class AgentsConfig(BaseModel):
    """Agent 配置容器：默认参数 + 具名 Agent（键为 Agent ID）。"""
    defaults: AgentDefaults = Field(default_factory=AgentDefaults)
    profiles: dict[str, AgentProfile] = Field(default_factory=dict)


# ==============================================================================
# 模型服务商配置
# ==============================================================================


class ProviderConfig(BaseModel):
    """单个服务商的凭证与端点配置。"""
    api_key: str = ""  # API 密钥（留空表示未配置该服务商）
    api_base: str | None = None  # 自定义端点（为空时使用描述符的默认端点）
    extra_headers: dict[str, str] | None = None  # 额外请求头


class ProvidersConfig(BaseModel):
    """
    所有服务商的聚合配置，字段名与 providers/registry.py 中描述符的 name 一一对应。
    """
    openai: ProviderConfig = Field(default_factory=ProviderConfig)
    anthropic: ProviderConfig = Field(default_factory=ProviderConfig)
    gemini: ProviderConfig = Field(default_factory=ProviderConfig)
    dashscope: ProviderConfig = Field(default_factory=ProviderConfig)  # 阿里云通义千问
    deepseek: ProviderConfig = Field(default_factory=ProviderConfig)
    moonshot: ProviderConfig = Field(default_factory=ProviderConfig)
    zhipu: ProviderConfig = Field(default_factory=ProviderConfig)
    openrouter: ProviderConfig = Field(default_factory=ProviderConfig)
    litellm: ProviderConfig = Field(default_factory=ProviderConfig)  # 经由 LiteLLM 统一调用


# ==============================================================================
# 知识库配置
# ==============================================================================


class EmbeddingModelConfig(BaseModel):
    """嵌入模型配置。api_key/api_base 为空时回退到对应服务商的配置。"""
    provider: str = "dashscope"
    model: str = "text-embedding-v3"
    api_key: str = ""
    api_base: str | None = None
    dimension: int = 1024


class KnowledgeConfig(BaseModel):
    """
    知识库配置。

    base_model 用于入库时的分块向量化，search_model 用于查询向量化。
    两者的向量维度必须一致，引擎本身不做校验。
    """
    base_model: EmbeddingModelConfig = Field(default_factory=EmbeddingModelConfig)
    search_model: EmbeddingModelConfig = Field(default_factory=EmbeddingModelConfig)
    threshold: float = 0.6  # 相似度阈值，低于该值的结果被丢弃
    limit: int = 5  # 返回结果的最大条数
    chunk_size: int = 425  # 分块大小（字符数）


# ==============================================================================
# 辅助模型配置
# ==============================================================================


class VisionModelConfig(BaseModel):
    """内置 VISION 工具使用的视觉模型（通过 LiteLLM 非流式调用）。"""
    model: str = "gpt-4o"
    provider: str | None = None
    temperature: float = 1.0
    max_tokens: int = 1024


class ImageModelConfig(BaseModel):
    """
    内置 IMAGE 工具使用的异步图像生成服务（DashScope 风格：提交任务 + 轮询结果）。

    轮询采用有界指数退避：poll_interval 起步，每次乘以 backoff_factor，
    不超过 max_interval；超过 timeout 秒仍未终态则判定超时。
    """
    model: str = "wanx2.1-t2i-turbo"
    api_key: str = ""  # 为空时回退到 providers.dashscope.api_key
    post_url: str = "https://dashscope.aliyuncs.com/api/v1/services/aigc/text2image/image-synthesis"
    get_url: str = "https://dashscope.aliyuncs.com/api/v1/tasks/"
    poll_interval: float = 2.0
    backoff_factor: float = 1.5
    max_interval: float = 10.0
    timeout: float = 300.0


class ModelsConfig(BaseModel):
    """辅助模型的聚合配置。"""
    vision: VisionModelConfig = Field(default_factory=VisionModelConfig)
    image: ImageModelConfig = Field(default_factory=ImageModelConfig)


# ==============================================================================
# 工具与存储配置
# ==============================================================================


class McpServerConfig(BaseModel):
    """单个 MCP 服务器（HTTP JSON-RPC 传输）。"""
    url: str = ""
    headers: dict[str, str] = Field(default_factory=dict)
    enabled: bool = True
    timeout: float = 30.0


class ToolsConfig(BaseModel):
    """工具总配置。"""
    mcp_servers: dict[str, McpServerConfig] = Field(default_factory=dict)
    skills_dir: str = ""  # 技能目录，为空时使用 ~/.orchestra/skills


class StorageConfig(BaseModel):
    """持久化配置。"""
    path: str = ""  # 为空时使用 ~/.orchestra/storage


# ==============================================================================
# 根配置类
# ==============================================================================


class Config(BaseSettings):
    """
    orchestra 根配置类。

    继承自 Pydantic 的 BaseSettings，除了支持从 JSON 文件加载外，
    还支持从环境变量读取配置：
    - 环境变量前缀: ORCHESTRA_
    - 嵌套分隔符: __ (双下划线)
    - 示例: ORCHESTRA_PROVIDERS__OPENAI__API_KEY=sk-... 覆盖 providers.openai.api_key
    """
    agents: AgentsConfig = Field(default_factory=AgentsConfig)
    providers: ProvidersConfig = Field(default_factory=ProvidersConfig)
    knowledge: KnowledgeConfig = Field(default_factory=KnowledgeConfig)
    models: ModelsConfig = Field(default_factory=ModelsConfig)
    tools: ToolsConfig = Field(default_factory=ToolsConfig)
    storage: StorageConfig = Field(default_factory=StorageConfig)

    @property
    def storage_path(self) -> Path:
        """获取展开后的存储目录（不负责创建）。"""
        if self.storage.path:
            return Path(self.storage.path).expanduser()
        return Path.home() / ".orchestra" / "storage"

    def resolve_profile(self, agent_id: str | None = None) -> AgentProfile:
        """
        获取补全后的 Agent 配置。

        agent_id 为空或未在 agents.profiles 中声明时，返回由 defaults 构造的默认 Agent。
        已声明的 Agent 中为空的字段（model、mode、temperature 等）由 defaults 补齐。
        """
        d = self.agents.defaults
        agent_id = agent_id or "default"
        profile = self.agents.profiles.get(agent_id)
        if profile is None:
            profile = AgentProfile(system_prompt=d.system_prompt)
        # profiles 的键即 Agent ID
        return profile.model_copy(update={
            "id": agent_id,
            "model": profile.model or d.model,
            "provider": profile.provider or d.provider,
            "mode": profile.mode or d.mode,
            "temperature": d.temperature if profile.temperature is None else profile.temperature,
            "max_history": d.max_history if profile.max_history is None else profile.max_history,
            "max_iterations": d.max_iterations if profile.max_iterations is None else profile.max_iterations,
        })

    def _match_provider(self, model: str | None = None, provider: str | None = None) -> tuple["ProviderConfig | None", str | None]:
        """
        根据服务商名称或模型名称匹配服务商配置。

        匹配策略：
        1. 显式 provider 名称：直接返回对应配置（无论是否配置了 api_key）
        2. 关键词匹配：模型名中包含描述符关键词，且该服务商已配置 api_key
        3. 兜底：第一个已配置 api_key 的服务商

        返回:
            (服务商配置, 服务商名称) 的元组，均可能为 None
        """
        from orchestra.providers.registry import DESCRIPTORS

        if provider:
            return getattr(self.providers, provider, None), provider

        model_lower = (model or self.agents.defaults.model).lower()
        for desc in DESCRIPTORS:
            p = getattr(self.providers, desc.name, None)
            if p and p.api_key and any(kw in model_lower for kw in desc.keywords):
                return p, desc.name

        for desc in DESCRIPTORS:
            p = getattr(self.providers, desc.name, None)
            if p and p.api_key:
                return p, desc.name
        return None, None

    def get_provider(self, model: str | None = None, provider: str | None = None) -> ProviderConfig | None:
        """获取匹配的服务商配置（包含 api_key、api_base、extra_headers）。"""
        p, _ = self._match_provider(model, provider)
        return p

    def get_provider_name(self, model: str | None = None, provider: str | None = None) -> str | None:
        """获取匹配的服务商名称（如 "deepseek"、"anthropic"）。"""
        _, name = self._match_provider(model, provider)
        return name

    def get_api_key(self, model: str | None = None, provider: str | None = None) -> str | None:
        """获取指定模型对应的 API Key。未匹配到服务商时返回 None。"""
        p = self.get_provider(model, provider)
        return p.api_key if p else None

    model_config = ConfigDict(
        env_prefix="ORCHESTRA_",
        env_nested_delimiter="__",
    )
