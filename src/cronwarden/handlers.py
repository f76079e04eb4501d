"""
Callable-action handler references.

A callable job cannot be shipped to the detached child process as a live
object, so it travels as an import reference of the form
``package.module:function`` and is resolved again inside the child.
"""
import importlib
import logging
import re
from typing import Any, Callable

from cronwarden.models import ConfigError

logger = logging.getLogger(__name__)

_REFERENCE_RE = re.compile(
    r'^[A-Za-z_][A-Za-z0-9_]*(\.[A-Za-z_][A-Za-z0-9_]*)*'
    r':[A-Za-z_][A-Za-z0-9_]*(\.[A-Za-z_][A-Za-z0-9_]*)*$'
)


class HandlerResolutionError(ConfigError):
    """A handler reference is malformed or cannot be imported."""
    pass


def validate_reference(reference: str) -> str:
    """
    Check the ``module:attribute`` shape of a handler reference.

    Args:
        reference: Handler reference string

    Returns:
        The reference, unchanged

    Raises:
        HandlerResolutionError: If the reference is malformed
    """
    if not _REFERENCE_RE.match(reference or ''):
        raise HandlerResolutionError(
            f"Invalid handler reference: {reference!r} "
            f"(expected 'package.module:function')"
        )
    return reference


def handler_reference(func: Callable[..., Any]) -> str:
    """
    Build the import reference for a module-level function.

    Args:
        func: Function to reference

    Returns:
        Reference string, e.g. ``mypkg.tasks:cleanup``

    Raises:
        HandlerResolutionError: For lambdas, nested functions and functions
            defined in ``__main__``, none of which a fresh interpreter can import
    """
    module = getattr(func, '__module__', None)
    qualname = getattr(func, '__qualname__', None)

    if not module or not qualname:
        raise HandlerResolutionError(f"Cannot reference callable {func!r}")

    if '<lambda>' in qualname or '<locals>' in qualname:
        raise HandlerResolutionError(
            f"Callable {qualname} must be a module-level function"
        )

    if module == '__main__':
        raise HandlerResolutionError(
            f"Callable {qualname} is defined in __main__; "
            f"move it into an importable module"
        )

    return validate_reference(f"{module}:{qualname}")


def resolve_handler(reference: str) -> Callable[[], Any]:
    """
    Import and return the callable named by a handler reference.

    Args:
        reference: ``module:attribute`` reference

    Returns:
        The callable

    Raises:
        HandlerResolutionError: If the module or attribute cannot be loaded,
            or the target is not callable
    """
    validate_reference(reference)
    module_name, _, attr_path = reference.partition(':')

    try:
        target = importlib.import_module(module_name)
    except ImportError as e:
        raise HandlerResolutionError(f"Cannot import handler module '{module_name}': {e}")

    for attr in attr_path.split('.'):
        try:
            target = getattr(target, attr)
        except AttributeError:
            raise HandlerResolutionError(f"Handler '{reference}' not found")

    if not callable(target):
        raise HandlerResolutionError(f"Handler '{reference}' is not callable")

    logger.debug(f"Resolved handler {reference}")
    return target
