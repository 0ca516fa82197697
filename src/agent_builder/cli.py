"""
Command-line interface for Agent-Builder.
"""

import argparse
import asyncio
import json
import logging
import sys
from pathlib import Path

import structlog

from .agent import ExecutionOptions, QueueSink
from .config import Settings, get_settings
from .container import Container
from .errors import AgentBuilderError
from .llm import GenerationSettings
from .storage import RunQuery

logger = structlog.get_logger()


def configure_logging(level: str) -> None:
    """Route structlog through stdlib logging on stderr."""
    logging.basicConfig(format="%(message)s", stream=sys.stderr, level=level.upper())

    structlog.configure(
        processors=[
            structlog.stdlib.filter_by_level,
            structlog.stdlib.add_log_level,
            structlog.stdlib.PositionalArgumentsFormatter(),
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            structlog.dev.ConsoleRenderer(colors=sys.stderr.isatty()),
        ],
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="agent-builder",
        description="Agent-Builder - configure agents and run tool-using conversations",
    )
    subparsers = parser.add_subparsers(dest="command", help="Available commands")

    subparsers.add_parser("init", help="Create .env and the data directory")

    config_parser = subparsers.add_parser("config", help="Show configuration")
    config_parser.add_argument("--check", action="store_true", help="Check configuration validity")

    agents_parser = subparsers.add_parser("agents", help="Manage agents")
    agents_sub = agents_parser.add_subparsers(dest="agents_command")

    create_parser = agents_sub.add_parser("create", help="Create an agent")
    create_parser.add_argument("name", help="Agent name")
    create_parser.add_argument("--prompt", required=True, help="System prompt")
    create_parser.add_argument("--model", help="Default model (provider:model)")
    create_parser.add_argument("--tools", default="", help="Comma-separated allowed tools")
    create_parser.add_argument("--description", default="", help="Description")
    create_parser.add_argument("--tags", default="", help="Comma-separated tags")
    create_parser.add_argument("--temperature", type=float, help="Sampling temperature")
    create_parser.add_argument("--max-tokens", type=int, help="Max output tokens")
    create_parser.add_argument("--window", type=int, help="Message window size")
    create_parser.add_argument("--memory", action="store_true", help="Enable structured memory")

    list_agents_parser = agents_sub.add_parser("list", help="List agents")
    list_agents_parser.add_argument("--search", help="Filter by name or description")
    list_agents_parser.add_argument("--tag", action="append", help="Filter by tag")

    show_agent_parser = agents_sub.add_parser("show", help="Show an agent and its prompt versions")
    show_agent_parser.add_argument("agent_id", help="Agent ID")

    run_parser = subparsers.add_parser("run", help="Run an agent on a message")
    run_parser.add_argument("agent_id", help="Agent ID")
    run_parser.add_argument("message", help="User message")
    _add_execution_args(run_parser)

    continue_parser = subparsers.add_parser("continue", help="Continue an existing run")
    continue_parser.add_argument("run_id", help="Run ID")
    continue_parser.add_argument("message", help="User message")
    _add_execution_args(continue_parser)

    runs_parser = subparsers.add_parser("runs", help="Inspect runs")
    runs_sub = runs_parser.add_subparsers(dest="runs_command")

    list_runs_parser = runs_sub.add_parser("list", help="List runs")
    list_runs_parser.add_argument("--agent", help="Filter by agent ID")
    list_runs_parser.add_argument("--status", choices=["running", "completed", "error"])
    list_runs_parser.add_argument("--limit", type=int, default=20)

    show_run_parser = runs_sub.add_parser("show", help="Show a run trace")
    show_run_parser.add_argument("run_id", help="Run ID")

    delete_run_parser = runs_sub.add_parser("delete", help="Delete a run")
    delete_run_parser.add_argument("run_id", help="Run ID")

    cost_parser = subparsers.add_parser("cost", help="Show the cost of a run")
    cost_parser.add_argument("run_id", help="Run ID")

    models_parser = subparsers.add_parser("models", help="Model catalog")
    models_sub = models_parser.add_subparsers(dest="models_command")
    models_list_parser = models_sub.add_parser("list", help="List available models")
    models_list_parser.add_argument("--provider", help="Filter by provider")
    models_check_parser = models_sub.add_parser("check", help="Check that a model endpoint answers")
    models_check_parser.add_argument("model_id", help="Model ID (provider:model)")

    tools_parser = subparsers.add_parser("tools", help="Tool registry")
    tools_sub = tools_parser.add_subparsers(dest="tools_command")
    tools_sub.add_parser("list", help="List registered tools")

    return parser


def _add_execution_args(parser: argparse.ArgumentParser) -> None:
    parser.add_argument("--stream", action="store_true", help="Print events as they arrive")
    parser.add_argument("--model", help="Model override (provider:model)")
    parser.add_argument("--max-turns", type=int, help="Turn limit for this request")


def main() -> None:
    """Main entry point for the CLI."""
    parser = build_parser()
    args = parser.parse_args()

    if args.command is None:
        parser.print_help()
        sys.exit(0)

    settings = get_settings()
    configure_logging(settings.log_level)

    if args.command == "init":
        init_project()
        return
    if args.command == "config":
        show_config(settings, args.check)
        return

    try:
        asyncio.run(dispatch(args, parser, settings))
    except AgentBuilderError as e:
        print(f"Error: {e}", file=sys.stderr)
        sys.exit(1)


async def dispatch(args: argparse.Namespace, parser: argparse.ArgumentParser, settings: Settings) -> None:
    container = await Container.create(settings)

    if args.command == "agents":
        if args.agents_command == "create":
            await create_agent(container, args)
        elif args.agents_command == "list":
            await list_agents(container, args.search, args.tag)
        elif args.agents_command == "show":
            await show_agent(container, args.agent_id)
        else:
            parser.parse_args(["agents", "--help"])
    elif args.command == "run":
        await run_agent(container, args)
    elif args.command == "continue":
        await continue_run(container, args)
    elif args.command == "runs":
        if args.runs_command == "list":
            await list_runs(container, args.agent, args.status, args.limit)
        elif args.runs_command == "show":
            await show_run(container, args.run_id)
        elif args.runs_command == "delete":
            await container.traces.delete_run(args.run_id)
            print(f"Deleted run {args.run_id}")
        else:
            parser.parse_args(["runs", "--help"])
    elif args.command == "cost":
        await show_cost(container, args.run_id)
    elif args.command == "models":
        if args.models_command == "check":
            await check_model(container, args.model_id)
        else:
            await list_models(container, args.provider if args.models_command == "list" else None)
    elif args.command == "tools":
        list_tools(container)
    else:
        parser.print_help()


async def create_agent(container: Container, args: argparse.Namespace) -> None:
    agent = await container.agents.create(
        name=args.name,
        system_prompt=args.prompt,
        default_model=args.model or container.settings.default_model,
        allowed_tools=_split(args.tools),
        description=args.description,
        tags=_split(args.tags),
        settings=GenerationSettings(temperature=args.temperature, max_tokens=args.max_tokens),
        message_window_size=args.window,
        use_structured_memory=args.memory,
    )
    print(f"Created agent {agent.id} ({agent.name})")


async def list_agents(container: Container, search: str | None, tags: list[str] | None) -> None:
    agents = await container.agents.list_agents(tags=tags, search=search)

    if not agents:
        print("No agents.")
        return

    print(f"\n{'ID':<38} {'Name':<24} {'Model':<32} {'Tools':<20}")
    print("-" * 116)

    for agent in agents:
        tools = ",".join(agent.allowed_tools) or "-"
        print(f"{agent.id:<38} {agent.name:<24} {agent.default_model:<32} {tools:<20}")


async def show_agent(container: Container, agent_id: str) -> None:
    agent = await container.agents.get(agent_id)
    if agent is None:
        print(f"Agent {agent_id} not found.")
        return

    print(f"\n=== {agent.name} ===\n")
    print(f"  ID: {agent.id}")
    print(f"  Description: {agent.description or '-'}")
    print(f"  Model: {agent.default_model}")
    print(f"  Tools: {', '.join(agent.allowed_tools) or '(none)'}")
    print(f"  Tags: {', '.join(agent.tags) or '-'}")
    print(f"  Settings: {agent.settings.to_dict() or '(defaults)'}")
    print(f"  Window: {agent.message_window_size or '(none)'}")
    print(f"  Structured memory: {agent.use_structured_memory}")
    print(f"\nSystem prompt (v{agent.prompt_version}):\n{agent.system_prompt}")

    versions = await container.agents.list_prompt_versions(agent_id)
    print("\nPrompt versions:")
    for version in versions:
        created = version.created_at.strftime("%Y-%m-%d %H:%M:%S") if version.created_at else "N/A"
        print(f"  v{version.version:<4} {created}  {version.commit_message or ''}")

    stats = await container.traces.get_tool_stats(agent_id)
    if stats:
        print("\nTool usage:")
        for stat in stats:
            print(
                f"  {stat.tool_name:<12} {stat.total_executions:>5} calls  "
                f"{stat.success_rate:.0%} ok  {stat.avg_execution_time_ms:.0f}ms avg"
            )


async def run_agent(container: Container, args: argparse.Namespace) -> None:
    options = ExecutionOptions(model_override=args.model, max_turns=args.max_turns)

    if args.stream:
        sink = QueueSink()
        await container.executor.execute_streaming(args.agent_id, args.message, options, sink=sink)
        await print_stream(sink)
        await container.executor.drain()
        return

    run_id = await container.executor.execute(args.agent_id, args.message, options)
    await print_last_reply(container, run_id)


async def continue_run(container: Container, args: argparse.Namespace) -> None:
    options = ExecutionOptions(model_override=args.model, max_turns=args.max_turns)

    if args.stream:
        sink = QueueSink()
        await container.executor.continue_streaming(args.run_id, args.message, options, sink=sink)
        await print_stream(sink)
        await container.executor.drain()
        return

    await container.executor.continue_conversation(args.run_id, args.message, options)
    await print_last_reply(container, args.run_id)


async def print_stream(sink: QueueSink) -> None:
    async for event in sink:
        if event.type == "content":
            sys.stdout.write(event.text or "")
            sys.stdout.flush()
        elif event.type == "run_created":
            print(f"[run {event.run_id}]")
        elif event.type == "error":
            print(f"\n[error] {event.message}")
        else:
            print(f"\n[{event.type}] {json.dumps(event.to_dict())}")
    print()


async def print_last_reply(container: Container, run_id: str) -> None:
    run = await container.traces.get_run(run_id)
    if run is None or not run.finalized_turns:
        print(f"Run {run_id} has no turns.")
        return

    print(run.finalized_turns[-1].assistant_message)
    print(f"\n[run {run.id} {run.status.value}, {run.total_usage.total_tokens} tokens]")


async def list_runs(container: Container, agent_id: str | None, status: str | None, limit: int) -> None:
    runs = await container.traces.query_runs(RunQuery(agent_id=agent_id, status=status, limit=limit))

    if not runs:
        print("No runs.")
        return

    print(f"\n{'ID':<38} {'Agent':<38} {'Status':<10} {'Turns':<6} {'Tokens':<8} {'Created':<20}")
    print("-" * 124)

    for run in runs:
        created = run.created_at.strftime("%Y-%m-%d %H:%M:%S") if run.created_at else "N/A"
        print(
            f"{run.id:<38} {run.agent_id:<38} {run.status.value:<10} "
            f"{len(run.finalized_turns):<6} {run.total_usage.total_tokens:<8} {created:<20}"
        )


async def show_run(container: Container, run_id: str) -> None:
    run = await container.traces.get_run(run_id)
    if run is None:
        print(f"Run {run_id} not found.")
        return

    print(f"\n=== Run {run.id} ===\n")
    print(f"  Agent: {run.agent_id}")
    print(f"  Model: {run.model_used}")
    print(f"  Status: {run.status.value}")
    print(f"  Version: {run.agent_version or '-'}")
    print(f"  Tokens: {run.total_usage.input_tokens} in / {run.total_usage.output_tokens} out")
    print(f"  Tool calls: {run.total_tool_calls}")
    if run.total_duration_ms is not None:
        print(f"  Duration: {run.total_duration_ms}ms")
    if run.error:
        print(f"  Error: {run.error}")

    for turn in run.turns:
        print(f"\n--- Turn {turn.turn_number} ({turn.state.value}) ---")
        print(f"User: {turn.user_message}")
        for execution in turn.tool_executions:
            status = "ok" if execution.result.success else f"failed: {execution.result.error}"
            print(f"  -> {execution.tool_name}({json.dumps(execution.parameters)}) {status}")
        print(f"Assistant: {turn.assistant_message}")


async def show_cost(container: Container, run_id: str) -> None:
    cost = await container.traces.calculate_run_cost(run_id)
    if cost is None:
        print(f"No pricing available for run {run_id}.")
        return

    print(f"\nModel: {cost.provider}:{cost.model_id}")
    print(f"  Input:  {cost.input_tokens:>8} tokens  ${cost.input_cost:.6f}")
    print(f"  Output: {cost.output_tokens:>8} tokens  ${cost.output_cost:.6f}")
    print(f"  Total:  ${cost.total_cost:.6f}")


async def list_models(container: Container, provider: str | None) -> None:
    if provider:
        models = await container.models.list_by_provider(provider)
    else:
        models = await container.models.list_models()

    if not models:
        print("No models available.")
        return

    print(f"\n{'ID':<48} {'Context':<10} {'Tools':<6} {'$/M in':<10} {'$/M out':<10}")
    print("-" * 86)

    for model in models:
        cost_in = f"{model.input_cost_per_million:.2f}" if model.input_cost_per_million is not None else "-"
        cost_out = f"{model.output_cost_per_million:.2f}" if model.output_cost_per_million is not None else "-"
        tools = "yes" if model.supports_tools else "no"
        print(f"{model.id:<48} {model.context_window:<10} {tools:<6} {cost_in:<10} {cost_out:<10}")


async def check_model(container: Container, model_id: str) -> None:
    status = await container.models.health_check(model_id)
    if status.available:
        print(f"{model_id}: available ({status.latency_ms}ms)")
    else:
        print(f"{model_id}: unavailable ({status.error})")


def list_tools(container: Container) -> None:
    for definition in container.tools.get_definitions():
        print(f"{definition.name:<10} {definition.description}")


def show_config(settings: Settings, check: bool) -> None:
    """Show current configuration."""

    def mask(value: str) -> str:
        if not value:
            return "(not set)"
        return value[:4] + "..." + value[-4:] if len(value) > 10 else "****"

    print("\n=== Agent-Builder Configuration ===\n")

    print("Storage:")
    print(f"  Database: {settings.database_url}")
    print(f"  Workspace: {settings.workspace_dir}")
    print(f"  Memory: {settings.memory_dir}")
    print(f"  Sandbox: {settings.sandbox_dir}")

    print("\nModel Providers:")
    print(f"  Default Model: {settings.default_model}")
    print(f"  OpenAI Key: {mask(settings.openai_api_key)}")
    print(f"  Anthropic Key: {mask(settings.anthropic_api_key)}")
    print(f"  OpenRouter Key: {mask(settings.openrouter_api_key)}")
    print(f"  Ollama URL: {settings.ollama_base_url}")

    print("\nExecution:")
    print(f"  Max Turns: {settings.max_turns}")
    print(f"  Default Window: {settings.default_window_size or '(none)'}")

    print("\nTools:")
    print(f"  Shell: {settings.enable_shell}")
    print(f"  File Operations: {settings.enable_file_operations}")
    print(f"  HTTP: {settings.enable_http}")

    if check:
        print("\n=== Configuration Check ===\n")
        warnings = []

        provider = settings.default_model.partition(":")[0]
        key_for = {
            "openai": settings.openai_api_key,
            "anthropic": settings.anthropic_api_key,
            "openrouter": settings.openrouter_api_key,
        }
        if provider in key_for and not key_for[provider]:
            warnings.append(f"Default model uses {provider} but its API key is not set")
        if provider not in ("ollama", *key_for):
            warnings.append(f"Unknown provider in DEFAULT_MODEL: {provider}")

        if warnings:
            print("Warnings:")
            for w in warnings:
                print(f"   - {w}")
        else:
            print("Configuration looks good!")


def init_project() -> None:
    """Create a starter .env and the data directory."""
    env_file = Path(".env")
    data_dir = Path("data")

    data_dir.mkdir(exist_ok=True)

    if not env_file.exists():
        env_content = """# Agent-Builder Configuration

# Model API keys (Ollama needs none)
# OPENAI_API_KEY=
# ANTHROPIC_API_KEY=
# OPENROUTER_API_KEY=
OLLAMA_BASE_URL=http://localhost:11434

# Default model for new agents
DEFAULT_MODEL=ollama:llama3.2

# Execution
MAX_TURNS=10
# DEFAULT_WINDOW_SIZE=20

# Tools
ENABLE_SHELL=true
ENABLE_FILE_OPERATIONS=true
ENABLE_HTTP=true

# Storage
DATABASE_URL=sqlite+aiosqlite:///./data/agent_builder.db
WORKSPACE_DIR=~/.agent-builder/workspace
MEMORY_DIR=~/.agent-builder/memory
"""
        env_file.write_text(env_content)
        print(f"Created {env_file}")
    else:
        print(f"{env_file} already exists")

    print(f"Created {data_dir}")
    print("\n=== Next Steps ===")
    print("1. Edit .env and set the API keys for the providers you use")
    print("2. Create an agent: agent-builder agents create helper --prompt 'You are helpful.' --tools echo")
    print("3. Run it: agent-builder run <agent-id> 'Hello'")


def _split(value: str) -> list[str]:
    return [item.strip() for item in value.split(",") if item.strip()]


if __name__ == "__main__":
    main()
