import argparse
from importlib import metadata

from rich.console import Console
from rich.prompt import Prompt

from .config import Config, ConfigManager


def package_version() -> str:
    try:
        return metadata.version("sabi-agent")
    except metadata.PackageNotFoundError:
        return "0.0.0+unknown"


def build_arg_parser() -> argparse.ArgumentParser:
    """Build the CLI argument parser."""
    parser = argparse.ArgumentParser(description="sabi: a shell assistant that proposes commands and runs them on approval")
    parser.add_argument("--api-key", help="API key")
    parser.add_argument("--model", help="Model to use")
    parser.add_argument("--proxy", help="Proxy server address (e.g., socks5://127.0.0.1:7890)")
    parser.add_argument("--base-url", help="API base URL (e.g., https://api.example.com)")
    parser.add_argument("--debug", action="store_true", default=None, help="Enable debug mode")
    parser.add_argument("--temperature", type=float, help="Temperature parameter for generation (e.g., 0.7)")
    parser.add_argument("--system-prompt", help="Custom system prompt, inline text or a file path")
    parser.add_argument("--system-prompt-file", help="File containing custom system prompt")
    parser.add_argument(
        "--safe",
        dest="safe_mode",
        action="store_true",
        default=None,
        help="Safe mode: show proposed commands but never execute them",
    )
    parser.add_argument(
        "--max-history",
        dest="max_history_messages",
        type=int,
        help="Number of recent messages sent to the model with each request",
    )
    parser.add_argument(
        "--save-config",
        action="store_true",
        help="Save the current settings as default configuration",
    )
    parser.add_argument("--version", action="version", version=f"%(prog)s {package_version()}")
    return parser


def resolve_system_prompt_arg(args: argparse.Namespace) -> None:
    """Resolve --system-prompt-file into --system-prompt content when provided."""
    system_prompt = None
    if args.system_prompt_file:
        try:
            with open(args.system_prompt_file, "r", encoding="utf-8") as file_obj:
                system_prompt = file_obj.read()
        except OSError as exc:
            print(f"Error reading system prompt file: {str(exc)}")
    elif args.system_prompt:
        system_prompt = args.system_prompt

    if system_prompt:
        args.system_prompt = system_prompt


def merge_runtime_config(args: argparse.Namespace, config_manager: ConfigManager) -> tuple:
    """Merge CLI args into persisted config and return both config object and dict."""
    config = config_manager.load_config()
    config_dict = config.to_dict()

    for key, value in vars(args).items():
        if value is not None and key in config_dict:
            config_dict[key] = value

    return Config.from_dict(config_dict), config_dict


def maybe_save_config(args: argparse.Namespace, config_dict: dict, config_manager: ConfigManager) -> None:
    """Persist merged config when --save-config is set."""
    if args.save_config:
        config_manager.save_config(**config_dict)
        print("Configuration saved successfully!")


REQUIRED_SETTINGS = (
    ("base_url", "Please enter the API base URL (e.g., https://api.openai.com/v1)", "Base URL"),
    ("model", "Please enter the model name (e.g., gpt-4o-mini)", "Model"),
    ("api_key", "Please enter your API key", "API key"),
)


def ensure_required_config(config: Config, config_manager: ConfigManager) -> Config:
    """Prompt for each missing required setting and persist the answer right away."""
    console = Console()
    for key, question, label in REQUIRED_SETTINGS:
        if getattr(config, key):
            continue
        try:
            answer = Prompt.ask(question).strip()
        except (KeyboardInterrupt, EOFError):
            console.print("\nConfiguration cancelled.", style="yellow")
            raise SystemExit(130) from None
        config_manager.save_config(**{key: answer})
        setattr(config, key, answer)
        console.print(f"{label} saved successfully!", style="green")
    return config
