"""Command handler functions for CLI operations."""

import asyncio
import sys
from pathlib import Path
from typing import Callable, Optional

from common.exceptions import FileFlowError
from common.logging_config import get_logger, set_access_code
from cli.config import Config, load_config
from cli.constants import ERROR_PREFIX, GREEN, RESET
from cli.models import ConfigCommand, ReceiveCommand, SendCommand, StatusCommand
from cli.utils import ProgressPrinter, format_file_size
from transfer.api import FileFlowApi
from transfer.chunk_transport import TransferFile
from transfer.orchestrator import TransferOrchestrator, TransferResult

logger = get_logger(__name__)

ApiFactory = Callable[[Config], FileFlowApi]

_config: Optional[Config] = None


def get_config() -> Config:
    """
    Get or create global Config instance.

    Returns:
        Config loaded from ~/.fileflow/config.json
    """
    global _config
    if _config is None:
        logger.debug("Loading CLI configuration")
        _config = load_config()
    return _config


def default_api_factory(config: Config) -> FileFlowApi:
    return FileFlowApi(config.get_base_url())


def _format_result(result: TransferResult, verb: str) -> str:
    if not result.succeeded:
        return f"{ERROR_PREFIX} {result.reason}"

    transport = "direct connection" if result.transport and result.transport.value == "p2p" else "server relay"
    lines = [
        f"{GREEN}{verb}{RESET} {result.file_name} "
        f"({format_file_size(result.bytes_transferred)}) via {transport}"
    ]
    if result.path is not None:
        lines.append(f"Saved to {result.path}")
    if verb == "Sent" and not result.confirmed:
        lines.append("Receiver has not confirmed completion yet")
    return "\n".join(lines)


def handle_send(
    cmd: SendCommand,
    config: Optional[Config] = None,
    api_factory: ApiFactory = default_api_factory,
) -> str:
    """
    Handle 'send' command.

    Args:
        cmd: SendCommand with file path and optional access code
        config: Optional Config for dependency injection (testing)
        api_factory: Builds the server API client from the config

    Returns:
        Success or error message
    """
    config = config or get_config()
    path = Path(cmd.file_path).expanduser()
    if not path.is_file():
        return f"{ERROR_PREFIX} File not found: {cmd.file_path}"

    file = TransferFile.from_path(path)
    logger.info(f"Executing send command: file={file.name} size={file.size}")
    return asyncio.run(_send(cmd, file, config, api_factory))


async def _send(cmd: SendCommand, file: TransferFile, config: Config, api_factory: ApiFactory) -> str:
    async with api_factory(config) as api:
        access_code = cmd.access_code
        if access_code is None:
            try:
                access_code = await api.allocate_code(file.name, file.size)
            except FileFlowError as e:
                return f"{ERROR_PREFIX} Could not get an access code: {e}"
            sys.stdout.write(f"Access code: {GREEN}{access_code}{RESET}\n")
            sys.stdout.flush()

        set_access_code(get_logger("transfer"), access_code)
        printer = ProgressPrinter("Sending", file.name)
        orchestrator = TransferOrchestrator(api, config.to_settings())
        result = await orchestrator.send(access_code, file, on_progress=printer, on_status=printer.status)
        printer.finish()
    return _format_result(result, "Sent")


def handle_receive(
    cmd: ReceiveCommand,
    config: Optional[Config] = None,
    api_factory: ApiFactory = default_api_factory,
) -> str:
    """
    Handle 'receive' command.

    Args:
        cmd: ReceiveCommand with access code and optional output directory
        config: Optional Config for dependency injection (testing)
        api_factory: Builds the server API client from the config

    Returns:
        Success or error message
    """
    config = config or get_config()
    output_dir = Path(cmd.output_dir).expanduser() if cmd.output_dir else config.get_download_dir()
    logger.info(f"Executing receive command: code={cmd.access_code} output_dir={output_dir}")
    return asyncio.run(_receive(cmd, output_dir, config, api_factory))


async def _receive(cmd: ReceiveCommand, output_dir: Path, config: Config, api_factory: ApiFactory) -> str:
    async with api_factory(config) as api:
        set_access_code(get_logger("transfer"), cmd.access_code)
        printer = ProgressPrinter("Receiving", cmd.access_code)
        orchestrator = TransferOrchestrator(api, config.to_settings())
        result = await orchestrator.receive(
            cmd.access_code,
            config.get_receiver_id(),
            output_dir,
            on_progress=printer,
            on_status=printer.status,
        )
        printer.finish()
    return _format_result(result, "Received")


def handle_status(
    cmd: StatusCommand,
    config: Optional[Config] = None,
    api_factory: ApiFactory = default_api_factory,
) -> str:
    """
    Handle 'status' command.

    Returns:
        Formatted transfer state
    """
    config = config or get_config()
    return asyncio.run(_status(cmd, config, api_factory))


async def _status(cmd: StatusCommand, config: Config, api_factory: ApiFactory) -> str:
    async with api_factory(config) as api:
        try:
            status = await api.get_status(cmd.access_code)
        except FileFlowError as e:
            return f"{ERROR_PREFIX} {e}"

    if status is None:
        return f"{ERROR_PREFIX} Unknown access code: {cmd.access_code}"

    size = format_file_size(status.file_size) if status.file_size is not None else "unknown"
    return "\n".join([
        f"File:     {status.file_name or 'unknown'}",
        f"Size:     {size}",
        f"Claimed:  {'yes' if status.is_using else 'no'}",
        f"Done:     {'yes' if status.done else 'no'}",
    ])


def handle_config(cmd: ConfigCommand, config: Optional[Config] = None) -> str:
    """
    Handle 'config' command.

    Returns:
        Current settings, or a confirmation of the change
    """
    config = config or get_config()
    if cmd.key is None:
        settings = config.describe()
        width = max(len(key) for key in settings)
        return "\n".join(f"  {key.ljust(width)}  {value}" for key, value in settings.items())

    try:
        config.set(cmd.key, cmd.value)
    except KeyError:
        return f"{ERROR_PREFIX} Unknown setting: {cmd.key}"
    except ValueError as e:
        return f"{ERROR_PREFIX} Invalid value for {cmd.key}: {e}"
    return f"Set {cmd.key} = {config.get(cmd.key)}"
