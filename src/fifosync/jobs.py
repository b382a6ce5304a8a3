"""Job class resolution, hooks and invocation.

A job class exposes `perform(*args)` as a static or class method. Classes
with `bind = True` receive the executing worker (or None when run inline)
as first argument.
"""
import importlib
import logging

logger = logging.getLogger(__name__)


def class_path(job_class) -> str:
    """Dotted import path for a job class (strings pass through).
    """
    if isinstance(job_class, str):
        return job_class
    return f'{job_class.__module__}.{job_class.__qualname__}'


def resolve_job_class(job_class):
    """Import a job class from its dotted path.

    Raises
        ImportError: If the module or class cannot be found
    """
    if not isinstance(job_class, str):
        return job_class
    module_name, _, attr = job_class.rpartition('.')
    if not module_name:
        raise ImportError(f'Job class {job_class!r} is not a dotted path')
    try:
        return getattr(importlib.import_module(module_name), attr)
    except AttributeError as e:
        raise ImportError(f'Job class {job_class!r} not found') from e


def _hooks(job_class, prefix: str) -> list[callable]:
    return [getattr(job_class, name) for name in sorted(dir(job_class))
            if name.startswith(prefix) and callable(getattr(job_class, name))]


def before_enqueue_hooks(job_class) -> list[callable]:
    return _hooks(job_class, 'before_enqueue')


def after_enqueue_hooks(job_class) -> list[callable]:
    return _hooks(job_class, 'after_enqueue')


def perform_job(job_class, args: list, worker=None):
    """Run a job class with its arguments.
    """
    job_class = resolve_job_class(job_class)
    if getattr(job_class, 'bind', False):
        return job_class.perform(worker, *args)
    return job_class.perform(*args)
