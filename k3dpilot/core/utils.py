import asyncio
import logging
import os
import secrets
import string
from collections.abc import Coroutine, Iterable
from typing import Any

from k3dpilot.core.config import DEFAULT_CLUSTER_NAME_MAX_LENGTH
from k3dpilot.core.exceptions import PreconditionError


def setup_logger(logger_name: str) -> logging.Logger:
    level = logging.getLevelName(os.getenv('K3DPILOT_LOG_LEVEL', 'INFO').upper())
    if not isinstance(level, int):
        level = logging.INFO

    logger = logging.getLogger(logger_name)
    logger.setLevel(level)
    logger.propagate = False

    formatter = logging.Formatter('%(asctime)s - %(name)s - %(levelname)s - %(message)s',
                                  datefmt='%d-%b-%y %H:%M:%S')
    console_handler = logging.StreamHandler()
    console_handler.setLevel(level=level)
    console_handler.setFormatter(formatter)

    if not logger.handlers:
        logger.addHandler(console_handler)

    return logger


def generate_token(length: int = 20) -> str:
    alphabet = string.ascii_letters + string.digits

    return ''.join(secrets.choice(alphabet) for _ in range(length))


def validate_hostname(name: str) -> None:
    """Ensure the name is a valid RFC 1123 host name label."""
    if not name:
        raise PreconditionError('No name provided')

    if name[0] == '-' or name[-1] == '-':
        raise PreconditionError(f"Hostname '{name}' must not start or end with '-' (dash)")

    allowed = set(string.ascii_letters + string.digits + '-')
    if any(c not in allowed for c in name):
        raise PreconditionError(f"Hostname '{name}' contains characters other than 'Aa-Zz', '0-9' or '-'")


def check_cluster_name(name: str) -> None:
    # node names are built as <prefix>-<cluster>-<role>-<index> and must stay below the runtime's 64 chars
    try:
        validate_hostname(name)
    except PreconditionError as e:
        raise PreconditionError(f'Invalid cluster name. {e}') from e

    if len(name) > DEFAULT_CLUSTER_NAME_MAX_LENGTH:
        raise PreconditionError(
            f'Cluster name must be <= {DEFAULT_CLUSTER_NAME_MAX_LENGTH} characters, but has {len(name)}'
        )


def _first_exception(group: BaseExceptionGroup) -> BaseException:
    first = group.exceptions[0]
    if isinstance(first, BaseExceptionGroup):
        return _first_exception(first)
    return first


async def run_concurrently(coroutines: Iterable[Coroutine[Any, Any, Any]]) -> None:
    """Run coroutines in a TaskGroup and re-raise the first failure unwrapped."""
    try:
        async with asyncio.TaskGroup() as group:
            for coroutine in coroutines:
                group.create_task(coroutine)
    except BaseExceptionGroup as e:
        raise _first_exception(e) from None
