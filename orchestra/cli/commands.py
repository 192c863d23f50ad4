"""
orchestra 命令行 (Typer + Rich + prompt_toolkit)。

- onboard：初始化配置文件和数据目录
- chat：与 Agent 对话（单条消息或交互式对话）
- knowledge：知识库管理（导入、检索、列表、删除）
- status：查看配置和服务商凭证状态
"""

import asyncio
import os
import select
import signal
import sys
from pathlib import Path

import typer
from rich.console import Console
from rich.markdown import Markdown
from rich.table import Table
from rich.text import Text

from prompt_toolkit import PromptSession
from prompt_toolkit.formatted_text import HTML
from prompt_toolkit.history import FileHistory
from prompt_toolkit.patch_stdout import patch_stdout

from orchestra import __logo__, __version__

app = typer.Typer(
    name="orchestra",
    help=f"{__logo__} orchestra - Conversation orchestration for LLM agents",
    no_args_is_help=True,
)

console = Console()
EXIT_COMMANDS = {"exit", "quit", "/exit", "/quit", ":q"}

# ---------------------------------------------------------------------------
# 交互输入：prompt_toolkit 负责编辑、粘贴和历史记录，
# 退出时把终端属性恢复到进入前的状态
# ---------------------------------------------------------------------------


class InteractivePrompt:
    """交互式输入会话，历史记录保存在 ~/.orchestra/history/cli_history。"""

    def __init__(self) -> None:
        from orchestra.utils.helpers import get_data_path

        self._saved_attrs = None
        try:
            import termios
            self._saved_attrs = termios.tcgetattr(sys.stdin.fileno())
        except (ImportError, OSError, ValueError):
            pass

        history_file = get_data_path() / "history" / "cli_history"
        history_file.parent.mkdir(parents=True, exist_ok=True)
        self.session = PromptSession(
            history=FileHistory(str(history_file)),
            enable_open_in_editor=False,
            multiline=False,
        )

    async def read(self) -> str:
        """读取一行输入，Ctrl+D 视同 Ctrl+C。"""
        self._discard_typeahead()
        try:
            with patch_stdout():
                return await self.session.prompt_async(HTML("<b fg='ansiblue'>You:</b> "))
        except EOFError as exc:
            raise KeyboardInterrupt from exc

    def restore(self) -> None:
        if self._saved_attrs is None:
            return
        try:
            import termios
            termios.tcsetattr(sys.stdin.fileno(), termios.TCSADRAIN, self._saved_attrs)
        except (ImportError, OSError):
            pass

    @staticmethod
    def _discard_typeahead() -> None:
        # Agent 运行期间敲下的按键不应进入下一次输入
        try:
            fd = sys.stdin.fileno()
            if not os.isatty(fd):
                return
        except (OSError, ValueError):
            return
        try:
            import termios
            termios.tcflush(fd, termios.TCIFLUSH)
        except ImportError:
            while select.select([fd], [], [], 0)[0] and os.read(fd, 4096):
                pass
        except OSError:
            return


def _print_reply(name: str, content: str, render_markdown: bool) -> None:
    console.print()
    console.print(f"[cyan]{__logo__} {name}[/cyan]")
    console.print(Markdown(content or "") if render_markdown else Text(content or ""))
    console.print()


def _fail(message: str) -> None:
    """打印错误并以状态码 1 退出。"""
    console.print(f"[red]Error: {message}[/red]")
    raise typer.Exit(1)


def _version_callback(value: bool):
    if value:
        console.print(f"{__logo__} orchestra v{__version__}")
        raise typer.Exit()


@app.callback()
def main(
    version: bool = typer.Option(
        None, "--version", "-v", callback=_version_callback, is_eager=True
    ),
):
    """orchestra - 带工具调用的 LLM Agent 编排。"""


# ============================================================================
# Onboard / Setup
# ============================================================================


@app.command()
def onboard():
    """
    初始化 orchestra。

    1. 在 ~/.orchestra/ 下创建默认配置文件 config.json
    2. 创建存储目录和技能目录
    3. 打印后续操作指引
    """
    from orchestra.config.loader import get_config_path, save_config
    from orchestra.config.schema import Config
    from orchestra.utils.helpers import get_skills_path, get_storage_path

    config_path = get_config_path()

    if config_path.exists():
        console.print(f"[yellow]Config already exists at {config_path}[/yellow]")
        if not typer.confirm("Overwrite?"):
            raise typer.Exit()

    config = Config()
    save_config(config)
    console.print(f"[green]✓[/green] Created config at {config_path}")
    console.print(f"[green]✓[/green] Storage at {get_storage_path(config.storage.path)}")
    console.print(f"[green]✓[/green] Skills at {get_skills_path(config.tools.skills_dir)}")

    console.print(f"\n{__logo__} orchestra is ready!")
    console.print("\nNext steps:")
    console.print("  1. Add your API key to [cyan]~/.orchestra/config.json[/cyan]")
    console.print("  2. Chat: [cyan]orchestra chat -m \"Hello!\"[/cyan]")


# ============================================================================
# Chat
# ============================================================================


@app.command()
def chat(
    message: str = typer.Option(None, "--message", "-m", help="Message to send to the agent"),
    agent_id: str = typer.Option(None, "--agent", "-a", help="Agent ID from agents.profiles"),
    mode: str = typer.Option(None, "--mode", help="Override agent mode: react | plan"),
    session_id: str = typer.Option(None, "--session", "-s", help="Conversation ID to continue"),
    markdown: bool = typer.Option(True, "--markdown/--no-markdown", help="Render assistant output as Markdown"),
    logs: bool = typer.Option(False, "--logs/--no-logs", help="Show orchestra runtime logs during chat"),
):
    """
    与 Agent 对话。

    1. 单条消息模式：orchestra chat -m "你好"
    2. 交互模式：orchestra chat（输入 exit 或 Ctrl+C 退出）
    """
    from contextlib import nullcontext

    from loguru import logger

    from orchestra.agent.context import AgentContext
    from orchestra.agent.loop import create_loop
    from orchestra.config.loader import load_config
    from orchestra.errors import ConfigurationError, OrchestraError

    if logs:
        logger.enable("orchestra")
    else:
        logger.disable("orchestra")

    try:
        context = AgentContext.from_config(load_config())
        profile = context.get_profile(agent_id)
        if mode:
            profile = profile.model_copy(update={"mode": mode})
        loop = create_loop(context, profile, context.create_history(profile, session_id))
    except ConfigurationError as e:
        _fail(str(e))

    name = profile.name or profile.id

    def _show_tool_call(event):
        if event.type == "tool_call" and event.tool_call:
            console.print(f"[dim]↳ {context.router.describe(event.tool_call.name)}[/dim]")

    loop.subscribe(_show_tool_call)

    async def _ask(text: str) -> None:
        spinner = nullcontext() if logs else console.status(f"[dim]{name} is thinking...[/dim]", spinner="dots")
        try:
            with spinner:
                reply = await loop.chat(text)
        except OrchestraError as e:
            console.print(f"[red]Error: {e}[/red]")
            return
        _print_reply(name, reply.content, markdown)

    if message:
        asyncio.run(_ask(message))
        console.print(f"[dim]Conversation: {loop.history.id}[/dim]")
        return

    prompt = InteractivePrompt()
    console.print(f"{__logo__} Chatting with [bold]{name}[/bold] ({profile.mode})")
    console.print(f"[dim]Conversation: {loop.history.id}, type [bold]exit[/bold] or [bold]Ctrl+C[/bold] to quit[/dim]\n")

    def _exit_on_sigint(signum, frame):
        prompt.restore()
        console.print("\nGoodbye!")
        os._exit(0)

    signal.signal(signal.SIGINT, _exit_on_sigint)

    async def _repl():
        while True:
            try:
                text = (await prompt.read()).strip()
            except KeyboardInterrupt:
                break
            if not text:
                continue
            if text.lower() in EXIT_COMMANDS:
                break
            await _ask(text)
        await loop.stop()
        prompt.restore()
        console.print("\nGoodbye!")

    asyncio.run(_repl())


# ============================================================================
# Knowledge
# ============================================================================


knowledge_app = typer.Typer(help="Manage knowledge bases")
app.add_typer(knowledge_app, name="knowledge")


def _knowledge_engine():
    from orchestra.config.loader import load_config
    from orchestra.errors import ConfigurationError
    from orchestra.history.store import JsonFileStore
    from orchestra.knowledge.engine import KnowledgeEngine

    config = load_config()
    try:
        return KnowledgeEngine.from_config(config, JsonFileStore(config.storage_path).namespace("knowledge"))
    except ConfigurationError as e:
        _fail(str(e))


def _run(coro):
    """在事件循环中执行协程，OrchestraError 转为错误退出。"""
    from orchestra.errors import OrchestraError

    try:
        return asyncio.run(coro)
    except OrchestraError as e:
        _fail(str(e))


@knowledge_app.command("add")
def knowledge_add(
    files: list[Path] = typer.Argument(..., help="Text files to ingest"),
    name: str = typer.Option(None, "--name", "-n", help="Knowledge base name"),
    description: str = typer.Option("", "--description", "-d", help="Description shown to the model"),
):
    """把文本文件切块、向量化后存为一个新的知识库。"""
    missing = [str(f) for f in files if not f.is_file()]
    if missing:
        _fail(f"File not found: {', '.join(missing)}")

    engine = _knowledge_engine()

    def _progress(percent: float, state: str, file_name: str | None) -> None:
        console.print(f"[dim]{percent:5.1f}% {state} {file_name or ''}[/dim]")

    kb = _run(engine.add_files(files, name=name, description=description, on_progress=_progress))
    console.print(f"[green]✓[/green] Created knowledge base {kb.meta.name} ({kb.meta.id}), {kb.chunk_count} chunks")


@knowledge_app.command("search")
def knowledge_search(
    query: str = typer.Argument(..., help="Query text"),
    kb: list[str] = typer.Option(None, "--kb", "-k", help="Knowledge base ID (repeatable, default all)"),
):
    """在知识库中检索相似内容。"""
    from orchestra.utils.helpers import truncate_string

    results = _run(_knowledge_engine().search(query, kb or None))
    if not results:
        console.print("No results above the similarity threshold.")
        return

    table = Table(title="Search Results")
    table.add_column("Similarity", style="cyan")
    table.add_column("Document")
    table.add_column("Content")
    for r in results:
        table.add_row(f"{r.similarity:.3f}", r.document_name, truncate_string(r.content, 120))
    console.print(table)


@knowledge_app.command("list")
def knowledge_list():
    """列出所有知识库。"""
    metas = _knowledge_engine().list()
    if not metas:
        console.print("No knowledge bases.")
        return

    table = Table(title="Knowledge Bases")
    for column in ("ID", "Name", "Description", "Version"):
        table.add_column(column, style="cyan" if column == "ID" else None)
    for m in metas:
        table.add_row(m.id, m.name, m.description, m.version)
    console.print(table)


@knowledge_app.command("delete")
def knowledge_delete(
    knowledge_id: str = typer.Argument(..., help="Knowledge base ID"),
):
    """删除一个知识库。"""
    if not _knowledge_engine().delete(knowledge_id):
        _fail(f"Knowledge base {knowledge_id} not found")
    console.print(f"[green]✓[/green] Deleted knowledge base {knowledge_id}")


# ============================================================================
# Status
# ============================================================================


def _mark(ok: bool, detail: str = "") -> str:
    if ok:
        return f"[green]✓{' ' + detail if detail else ''}[/green]"
    return "[dim]not set[/dim]"


@app.command()
def status():
    """显示配置文件、存储目录、默认模型和各服务商的凭证状态。"""
    from orchestra.config.loader import get_config_path, load_config
    from orchestra.providers.registry import DESCRIPTORS

    config_path = get_config_path()
    config = load_config()
    defaults = config.agents.defaults

    console.print(f"{__logo__} orchestra Status\n")
    console.print(f"Config: {config_path} {'[green]✓[/green]' if config_path.exists() else '[red]✗[/red]'}")
    console.print(f"Storage: {config.storage_path}")
    console.print(f"Model: {defaults.model} ({defaults.mode})")
    if config.agents.profiles:
        console.print(f"Agents: {', '.join(config.agents.profiles)}")

    for desc in DESCRIPTORS:
        p = getattr(config.providers, desc.name, None)
        if p is None:
            continue
        if desc.requires_key:
            console.print(f"{desc.label}: {_mark(bool(p.api_key))}")
        else:
            console.print(f"{desc.label}: {_mark(bool(p.api_base), p.api_base or '')}")

    for name, server in config.tools.mcp_servers.items():
        state = "[green]✓[/green]" if server.enabled else "[dim]disabled[/dim]"
        console.print(f"MCP {name}: {server.url} {state}")


if __name__ == "__main__":
    app()
