"""
dialgov: off-chain dial governance engine

Core imports are lazily loaded so that importing a submodule (e.g. the
logger or the config loader) does not pull in the whole engine.

    from dialgov.governance import GovernanceEngine
    from dialgov.config import load_config
    from dialgov.transport import MirrorNodeTransport
"""

__version__ = "1.0.0"


def __getattr__(name):
    """Lazy module loading."""
    if name == 'GovernanceEngine':
        from .governance import GovernanceEngine
        return GovernanceEngine
    elif name == 'load_config':
        from .config import load_config
        return load_config
    elif name == 'DialGovException':
        from .exceptions import DialGovException
        return DialGovException
    raise AttributeError(f"module 'dialgov' has no attribute {name!r}")

__all__ = ['GovernanceEngine', 'load_config', 'DialGovException']
