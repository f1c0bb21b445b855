#!/usr/bin/env python3
# This script implements the main command-line interface for the Tactus agent.
"""Main CLI interface for the Tactus agent."""

import asyncio
import logging
from typing import Optional
from urllib.parse import urlparse

import click

from config import (
    SUPPORTED_LANGUAGES,
    AuthMode,
    HostConfig,
    RemoteProviderConfig,
    generate_provider_id,
    load_config,
)
from tactus_agent.core.agent_loop import AgentLoop, ReActConfig
from tactus_agent.core.builtin_tool_executor import BuiltinToolExecutor, DirectorySkillHost
from tactus_agent.core.chat_client import ChatCompletionClient
from tactus_agent.core.chat_interface import ChatInterface
from tactus_agent.core.credential_store import JSONFileCredentialStore
from tactus_agent.core.errors import TactusError
from tactus_agent.core.tool_execution_engine import ToolExecutionEngine
from tactus_agent.core.tool_registry import ToolRegistry
from tactus_agent.core.types import ToolContext
from tactus_agent.mcp.connection_manager import MCPConnectionManager
from tactus_agent.mcp.oauth import OAuthCredentialManager
from tactus_agent.tools.page_content import HttpPageSource

# Configure logging
logging.basicConfig(
    level=logging.WARNING,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)
logger = logging.getLogger(__name__)


def create_credential_manager(config: HostConfig) -> OAuthCredentialManager:
    store = JSONFileCredentialStore(config.credentials_file)
    return OAuthCredentialManager(
        store, config.oauth_redirect_url, client_name=config.host_name
    )


def find_provider(config: HostConfig, key: str) -> Optional[RemoteProviderConfig]:
    """Look a provider up by id, then by display name."""
    provider = config.get_remote_provider(key)
    if provider is not None:
        return provider
    for candidate in config.remote_providers:
        if candidate.display_name == key:
            return candidate
    return None


def parse_headers(header_args) -> dict:
    headers = {}
    for header in header_args:
        if "=" not in header:
            raise click.BadParameter(f"Invalid header format: {header} (expected KEY=VALUE)")
        key, value = header.split("=", 1)
        headers[key.strip()] = value.strip()
    return headers


# CLI functionality
@click.group()
@click.option("--log-level", default=None, help="Override LOG_LEVEL for this run")
def cli(log_level):
    """Tactus Agent - a tool-calling chat agent with MCP integration."""
    level = log_level or HostConfig().log_level
    logging.getLogger().setLevel(level.upper())


@cli.command()
def init():
    """Initialize configuration file."""
    from config import create_sample_env

    create_sample_env()


@cli.command()
@click.option("--set", "set_model", default=None, help="Persist this model as the default")
async def models(set_model):
    """List the models offered by the chat endpoint."""
    config = load_config()
    if set_model:
        config.model = set_model
        config.save_persistent_config()
        click.echo(f"✅ Default model set to: {set_model}")
        return

    try:
        chat_config = config.get_chat_provider_config()
    except ValueError as e:
        click.echo(f"❌ {e}. Run 'tactus init' and update the .env file.")
        return

    client = ChatCompletionClient(
        chat_config.base_url, chat_config.api_key, chat_config.model, chat_config.timeout
    )
    try:
        available = await client.fetch_models()
    finally:
        await client.close()

    if not available:
        click.echo("No models returned by the endpoint.")
        return
    click.echo(f"Models at {chat_config.base_url}:")
    for model in available:
        marker = "*" if model.id == config.model else " "
        click.echo(f" {marker} {model.id}")


@cli.command()
@click.argument("prompt", required=False)
@click.option("--page-url", default=None, help="Page the agent may read with extract_page_content")
@click.option(
    "--share-page/--no-share-page",
    default=None,
    help="Offer the page tool (default: SHARE_PAGE_CONTENT, or on when --page-url is given)",
)
@click.option("--quote", default=None, help="Quoted text attached to the prompt")
@click.option("--no-tools", is_flag=True, help="Answer without executing any tools")
@click.option(
    "--max-iterations", type=click.IntRange(min=1), default=None, help="Tool rounds per turn"
)
@click.option("--language", type=click.Choice(SUPPORTED_LANGUAGES), default=None)
@click.option("--show-context", is_flag=True, help="Print the messages sent to the model")
async def chat(
    prompt, page_url, share_page, quote, no_tools, max_iterations, language, show_context
):
    """Chat with the agent; a PROMPT runs a single turn."""
    config = load_config()
    if max_iterations is not None:
        config.max_iterations = max_iterations
    if language:
        config.language = language

    try:
        chat_config = config.get_chat_provider_config()
    except ValueError as e:
        click.echo(f"❌ {e}. Run 'tactus init' and update the .env file.")
        return

    if share_page is None:
        share_page = config.share_page_content or page_url is not None
    if share_page and page_url is None:
        click.echo("⚠️  Page sharing needs --page-url; the page tool is disabled.")
        share_page = False

    enable_tools = config.enable_tools and not no_tools
    chat_client = ChatCompletionClient(
        chat_config.base_url, chat_config.api_key, chat_config.model, chat_config.timeout
    )
    credential_manager = create_credential_manager(config)
    connection_manager = MCPConnectionManager(
        credential_manager, timeout=config.request_timeout
    )

    try:
        registry = ToolRegistry()
        executor = BuiltinToolExecutor(
            page_source=HttpPageSource(page_url) if page_url and share_page else None,
            skill_host=DirectorySkillHost(config.config_path / "skills"),
            page_content_limit=config.page_content_limit,
        )
        executor.register_all(registry)

        if enable_tools:
            errors = await connection_manager.connect_enabled(
                config.get_enabled_remote_providers()
            )
            for provider_id, error in errors.items():
                click.echo(f"⚠️  Failed to connect to MCP server '{provider_id}': {error}")
            registry.sync_remote(connection_manager)

        context = ToolContext(
            share_page_content=share_page,
            skills=executor.list_skills(),
            language=config.language,
            page_url=page_url,
            page_domain=urlparse(page_url).netloc if page_url else None,
        )
        agent_loop = AgentLoop(
            chat_client,
            registry,
            executor=ToolExecutionEngine(registry),
            react_config=ReActConfig(
                enable_tools=enable_tools, max_iterations=config.max_iterations
            ),
        )
        interface = ChatInterface(
            agent_loop,
            context,
            show_context=show_context,
            history_file=str(config.config_path / "history") if config.config_path.is_dir() else None,
        )

        if prompt:
            await interface.run_turn(prompt, quote=quote)
        else:
            await interface.interactive_chat(chat_config.model)
    finally:
        await connection_manager.disconnect_all()
        await credential_manager.close()
        await chat_client.close()


@cli.group()
def mcp():
    """Manage remote MCP servers."""
    pass


@mcp.command("list")
def list_mcp_servers():
    """List all configured MCP servers."""
    config = load_config()
    if not config.remote_providers:
        click.echo("No MCP servers configured.")
        click.echo("Add a server with: tactus mcp add <name> <url>")
        return

    click.echo("Configured MCP servers:")
    click.echo()
    for provider in config.remote_providers:
        status = "enabled" if provider.enabled else "disabled"
        click.echo(f"📡 {provider.display_name} ({provider.id}) [{status}]")
        click.echo(f"   URL: {provider.endpoint_url}")
        click.echo(f"   Auth: {provider.auth_mode.value}")
        if provider.description:
            click.echo(f"   Description: {provider.description}")
        click.echo()


@mcp.command()
@click.argument("name")
@click.argument("url")
@click.option(
    "--auth",
    type=click.Choice([mode.value for mode in AuthMode]),
    default=AuthMode.NONE.value,
    help="Authentication mode",
)
@click.option("--token", default=None, help="Static bearer token (with --auth bearer)")
@click.option("--header", multiple=True, help="Extra request header (format: KEY=VALUE)")
@click.option("--description", default=None)
def add(name, url, auth, token, header, description):
    """Add a remote MCP server reachable over Streamable HTTP.

    Examples:
        tactus mcp add docs https://example.com/mcp
        tactus mcp add github https://api.example.com/mcp --auth oauth
    """
    try:
        if auth == AuthMode.BEARER.value and not token:
            click.echo("❌ --auth bearer requires --token")
            return

        config = load_config()
        provider = RemoteProviderConfig(
            id=generate_provider_id(),
            display_name=name,
            endpoint_url=url,
            auth_mode=AuthMode(auth),
            static_token=token,
            extra_headers=parse_headers(header),
            description=description,
        )
        config.add_remote_provider(provider)
        config.save_remote_providers()
        click.echo(f"✅ Added MCP server '{name}' ({provider.id})")
        click.echo(f"   URL: {url}")
        if provider.auth_mode == AuthMode.OAUTH:
            click.echo(f"   Run 'tactus mcp login {provider.id}' to authorize.")
    except (ValueError, click.BadParameter) as e:
        click.echo(f"❌ Error adding MCP server: {e}")


@mcp.command()
@click.argument("provider")
def remove(provider):
    """Remove an MCP server configuration."""
    config = load_config()
    found = find_provider(config, provider)
    if found is None or not config.remove_remote_provider(found.id):
        click.echo(f"❌ MCP server '{provider}' not found")
        return
    config.save_remote_providers()
    click.echo(f"✅ Removed MCP server '{found.display_name}'")


def _set_enabled(provider: str, enabled: bool):
    config = load_config()
    found = find_provider(config, provider)
    if found is None:
        click.echo(f"❌ MCP server '{provider}' not found")
        return
    config.toggle_remote_provider(found.id, enabled)
    config.save_remote_providers()
    click.echo(f"✅ {'Enabled' if enabled else 'Disabled'} MCP server '{found.display_name}'")


@mcp.command()
@click.argument("provider")
def enable(provider):
    """Enable an MCP server."""
    _set_enabled(provider, True)


@mcp.command()
@click.argument("provider")
def disable(provider):
    """Disable an MCP server."""
    _set_enabled(provider, False)


@mcp.command("tools")
@click.argument("provider", required=False)
async def list_mcp_tools(provider):
    """Connect to MCP servers and list the tools they offer."""
    config = load_config()
    if provider:
        found = find_provider(config, provider)
        if found is None:
            click.echo(f"❌ MCP server '{provider}' not found")
            return
        targets = [found]
    else:
        targets = config.get_enabled_remote_providers()

    if not targets:
        click.echo("No enabled MCP servers.")
        return

    credential_manager = create_credential_manager(config)
    manager = MCPConnectionManager(credential_manager, timeout=config.request_timeout)
    try:
        for target in targets:
            try:
                tools = await manager.connect(target)
            except Exception as e:
                click.echo(f"❌ {target.display_name}: {e}")
                continue
            click.echo(f"📡 {target.display_name} ({len(tools)} tools)")
            for tool in tools:
                click.echo(f"   🔧 {tool.remote_name} - {tool.description or 'No description'}")
    finally:
        await manager.disconnect_all()
        await credential_manager.close()


def _prompt_for_redirect(url: str) -> str:
    click.echo("Open this URL in your browser to authorize:")
    click.echo(f"   {url}")
    try:
        click.launch(url)
    except Exception as e:
        logger.debug(f"Could not open a browser: {e}")
    return click.prompt("Paste the full URL you were redirected to")


@mcp.command()
@click.argument("provider")
async def login(provider):
    """Authorize an OAuth MCP server."""
    config = load_config()
    found = find_provider(config, provider)
    if found is None:
        click.echo(f"❌ MCP server '{provider}' not found")
        return
    if found.auth_mode != AuthMode.OAUTH:
        click.echo(f"❌ MCP server '{found.display_name}' does not use OAuth")
        return

    credential_manager = create_credential_manager(config)
    try:
        await credential_manager.authorize(found.id, found.endpoint_url, _prompt_for_redirect)
        click.echo(f"✅ Authorized MCP server '{found.display_name}'")
    except TactusError as e:
        click.echo(f"❌ Authorization failed: {e}")
    finally:
        await credential_manager.close()


@mcp.command()
@click.argument("provider")
async def logout(provider):
    """Forget the OAuth credentials of an MCP server."""
    config = load_config()
    found = find_provider(config, provider)
    if found is None:
        click.echo(f"❌ MCP server '{provider}' not found")
        return

    credential_manager = create_credential_manager(config)
    try:
        await credential_manager.invalidate(found.id, "all")
        click.echo(f"✅ Logged out of MCP server '{found.display_name}'")
    finally:
        await credential_manager.close()


@mcp.command()
async def status():
    """Show the authorization status of every MCP server."""
    config = load_config()
    if not config.remote_providers:
        click.echo("No MCP servers configured.")
        return

    credential_manager = create_credential_manager(config)
    try:
        for provider in config.remote_providers:
            line = f"📡 {provider.display_name} ({provider.id})"
            if not provider.enabled:
                line += " [disabled]"
            if provider.auth_mode == AuthMode.OAUTH:
                auth_status = await credential_manager.get_status(provider.id)
                marker = "✅" if auth_status.authenticated else "❌"
                line += f" - OAuth {marker} {auth_status.state.value}"
            else:
                line += f" - auth: {provider.auth_mode.value}"
            click.echo(line)
    finally:
        await credential_manager.close()


ASYNC_COMMANDS = [models, chat, list_mcp_tools, login, logout, status]


def main():
    """Main entry point."""

    # Convert async commands to sync
    def make_sync(callback):
        def sync_callback(**kwargs):
            asyncio.run(callback(**kwargs))

        return sync_callback

    for command in ASYNC_COMMANDS:
        command.callback = make_sync(command.callback)

    cli()


if __name__ == "__main__":
    main()
