"""
Agent 运行上下文 - 一次构建，显式传入各个 Agent 循环。

AgentContext 持有：
- config: 根配置
- conversations: 对话存储（KeyValueStore 的 "conversations" 命名空间）
- knowledge: 知识库引擎
- router: 注册了全部后端（插件、知识库、工作流、子 Agent、技能、MCP、内置工具）的工具路由器
- 模型工厂 create_model(profile, history)：描述符 + 传输层 + 凭证 → StreamingModel

测试时可以通过 from_config() 的参数替换传输层、存储、知识库和各类模型。
"""

from loguru import logger

from orchestra.agent.skills import SkillsLoader
from orchestra.agent.subagent import SubAgentBackend
from orchestra.agent.tools.backends import (
    InMemoryWorkflowEngine,
    KnowledgeBackend,
    Plugin,
    PluginBackend,
    SkillBackend,
    WorkflowBackend,
    WorkflowEngine,
)
from orchestra.agent.tools.builtin import (
    BuiltinBackend,
    DashScopeImageModel,
    ImageModel,
    LiteLLMVisionModel,
    VisionModel,
)
from orchestra.agent.tools.mcp import ExternalToolBackend
from orchestra.agent.tools.router import ToolRouter
from orchestra.config.schema import AgentProfile, Config, ProviderConfig
from orchestra.errors import ConfigurationError
from orchestra.history.manager import HistoryManager
from orchestra.history.store import JsonFileStore, KeyValueStore
from orchestra.knowledge.engine import KnowledgeEngine
from orchestra.providers.base import Credentials, StreamTransport
from orchestra.providers.litellm_provider import LiteLLMProvider
from orchestra.providers.registry import ProviderDescriptor, find_by_model, find_by_name
from orchestra.providers.streaming import StreamingModel
from orchestra.providers.transport import HttpStreamTransport, LiteLLMTransport
from orchestra.utils.helpers import get_skills_path


class AgentContext:
    """
    Agent 运行上下文。

    属性:
        config: 根配置
        store: 根存储
        conversations: 对话存储
        knowledge: 知识库引擎
        router: 工具路由器
        transport: 注入的传输层（None 时按描述符自动选择）
    """

    def __init__(
        self,
        config: Config,
        store: KeyValueStore,
        knowledge: KnowledgeEngine,
        router: ToolRouter | None = None,
        transport: StreamTransport | None = None,
    ):
        self.config = config
        self.store = store
        self.conversations = store.namespace("conversations")
        self.knowledge = knowledge
        self.router = router or ToolRouter()
        self.transport = transport
        self._transports: dict[str, StreamTransport] = {}

    @classmethod
    def from_config(
        cls,
        config: Config,
        store: KeyValueStore | None = None,
        transport: StreamTransport | None = None,
        knowledge: KnowledgeEngine | None = None,
        workflows: WorkflowEngine | None = None,
        plugins: list[Plugin] | None = None,
        vision: VisionModel | None = None,
        image: ImageModel | None = None,
    ) -> "AgentContext":
        """
        根据配置构建上下文并注册全部工具后端。

        参数:
            config: 根配置
            store: 存储（默认在 config.storage_path 下的 JsonFileStore）
            transport: 流式传输层（默认按描述符选择 HTTP 或 LiteLLM）
            knowledge: 知识库引擎（默认按 knowledge 配置创建）
            workflows: 工作流引擎（默认为空的内存引擎）
            plugins: 插件列表
            vision: 视觉模型（默认按 models.vision 配置创建，没有凭证时不启用）
            image: 图像生成模型（默认按 models.image 配置创建，没有凭证时不启用）
        """
        store = store if store is not None else JsonFileStore(config.storage_path)
        knowledge = knowledge or KnowledgeEngine.from_config(config, store.namespace("knowledge"))
        context = cls(config, store, knowledge, transport=transport)

        ic = config.models.image
        context.router.register_backend(PluginBackend(plugins))
        context.router.register_backend(KnowledgeBackend(knowledge))
        context.router.register_backend(WorkflowBackend(workflows or InMemoryWorkflowEngine()))
        context.router.register_backend(SubAgentBackend(context))
        context.router.register_backend(SkillBackend(SkillsLoader(get_skills_path(config.tools.skills_dir))))
        context.router.register_backend(ExternalToolBackend.from_config(config.tools))
        context.router.register_backend(BuiltinBackend(
            vision=vision or _vision_from_config(config),
            image=image or _image_from_config(config),
            polling={
                "poll_interval": ic.poll_interval,
                "backoff_factor": ic.backoff_factor,
                "max_interval": ic.max_interval,
                "timeout": ic.timeout,
            },
        ))
        return context

    # ===== Agent 配置与历史 =====

    def get_profile(self, agent_id: str | None = None) -> AgentProfile:
        return self.config.resolve_profile(agent_id)

    def create_history(self, profile: AgentProfile, conversation_id: str | None = None) -> HistoryManager:
        """
        获取对话历史。

        指定 conversation_id 且存储中存在时加载该对话，否则新建一个对话。
        """
        if conversation_id:
            history = HistoryManager.load(conversation_id, self.conversations, profile.max_history or 0)
            if history is not None:
                return history
            logger.warning(f"Conversation {conversation_id} not found, starting a new one")
        return HistoryManager.create(
            system=profile.system_prompt,
            bot=profile.id,
            store=self.conversations,
            max_history=profile.max_history or 0,
        )

    # ===== 模型工厂 =====

    def resolve_descriptor(self, profile: AgentProfile) -> tuple[ProviderDescriptor, ProviderConfig]:
        """
        为 Agent 选择服务商描述符及其配置。

        异常:
            ConfigurationError: 没有匹配的服务商，或服务商需要凭证但未配置
        """
        name = self.config.get_provider_name(profile.model, profile.provider)
        desc = find_by_name(name) if name else find_by_model(profile.model)
        if desc is None:
            raise ConfigurationError(f"No provider configured for model {profile.model!r}")

        provider_config = getattr(self.config.providers, desc.name, None) or ProviderConfig()
        if desc.requires_key and not provider_config.api_key:
            raise ConfigurationError(
                f"No API key configured for {desc.label} (model {profile.model!r}). "
                f"Set providers.{desc.name}.apiKey in ~/.orchestra/config.json"
            )
        return desc, provider_config

    def create_model(self, profile: AgentProfile, history: HistoryManager) -> StreamingModel:
        """为 Agent 创建绑定到指定历史的流式模型。缺少凭证时同步抛出 ConfigurationError。"""
        desc, provider_config = self.resolve_descriptor(profile)
        credentials = Credentials(
            api_key=provider_config.api_key,
            headers={**desc.auth_headers(provider_config.api_key), **(provider_config.extra_headers or {})},
        )
        return StreamingModel(
            descriptor=desc,
            transport=self.transport or self._default_transport(desc),
            credentials=credentials,
            endpoint=desc.resolve_endpoint(provider_config.api_base),
            model=profile.model,
            history=history,
            temperature=profile.temperature if profile.temperature is not None else 1.0,
        )

    def _default_transport(self, desc: ProviderDescriptor) -> StreamTransport:
        if desc.transport not in self._transports:
            if desc.transport == "litellm":
                self._transports[desc.transport] = LiteLLMTransport()
            else:
                self._transports[desc.transport] = HttpStreamTransport()
        return self._transports[desc.transport]


def _vision_from_config(config: Config) -> VisionModel | None:
    vc = config.models.vision
    provider_config = config.get_provider(vc.model, vc.provider)
    if not provider_config or not provider_config.api_key:
        return None
    provider = LiteLLMProvider(
        api_key=provider_config.api_key,
        api_base=provider_config.api_base,
        default_model=vc.model,
        extra_headers=provider_config.extra_headers,
        provider_name=config.get_provider_name(vc.model, vc.provider),
    )
    return LiteLLMVisionModel(provider, model=vc.model, temperature=vc.temperature, max_tokens=vc.max_tokens)


def _image_from_config(config: Config) -> ImageModel | None:
    ic = config.models.image
    api_key = ic.api_key or config.providers.dashscope.api_key
    if not api_key:
        return None
    return DashScopeImageModel(model=ic.model, api_key=api_key, post_url=ic.post_url, get_url=ic.get_url)
