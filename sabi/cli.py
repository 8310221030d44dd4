import sys

from rich.console import Console

from .agent import CommandExecutor, CommandSafetyGuard
from .app import AgentApp
from .bootstrap import (
    build_arg_parser,
    ensure_required_config,
    maybe_save_config,
    merge_runtime_config,
    resolve_system_prompt_arg,
)
from .config import ConfigManager
from .events import EventRouter
from .exceptions import ConfigurationInvalid
from .history import ConversationContext
from .model import ChatModel
from .prompts import prompt_manager
from .state_machine import AgentController
from .ui import ChatUI


def main() -> None:
    """Main entry point."""
    parser = build_arg_parser()
    args = parser.parse_args()
    resolve_system_prompt_arg(args)

    console = Console()
    config_manager = ConfigManager()
    try:
        config, config_dict = merge_runtime_config(args, config_manager)
        maybe_save_config(args, config_dict, config_manager)
        config = ensure_required_config(config, config_manager)
        config.validate()
        guard = CommandSafetyGuard.from_config(config)
    except ConfigurationInvalid as exc:
        console.print(f"Configuration error: {exc}", style="red")
        sys.exit(2)

    router = EventRouter()
    controller = AgentController(
        model=ChatModel(config),
        executor=CommandExecutor.from_config(config),
        guard=guard,
        context=ConversationContext(max_history_messages=config.max_history_messages),
        router=router,
        system_prompt=prompt_manager.build_system_prompt(config.system_prompt),
        safe_mode=config.safe_mode,
        debug=config.debug,
    )
    AgentApp(controller, router, ChatUI(console=console), model_name=config.model).run()
