"""
Cursor Switchboard - multi-account credential manager for the Cursor IDE.

Keeps a registry of Cursor accounts, resolves their plan and usage, and
switches the locally installed IDE between them by upgrading a web session
token into a long-lived credential pair and rewriting Cursor's state store.

  switchboard add <token>      - register an account
  switchboard switch <id>      - make an account the active Cursor identity
  switchboard serve            - HTTP API + progress WebSocket
"""

__version__ = "0.3.0"


def __getattr__(name: str):
    """Lazy imports so `import switchboard` stays cheap for the CLI."""
    _lazy = {
        "Database": "switchboard.web.database",
        "SwitchOrchestrator": "switchboard.switch",
        "AppSession": "switchboard.switch",
        "normalize": "switchboard.tokens",
        "parse_token": "switchboard.tokens",
    }
    if name in _lazy:
        import importlib
        module = importlib.import_module(_lazy[name])
        return getattr(module, name)
    raise AttributeError(f"module 'switchboard' has no attribute {name!r}")


__all__ = [
    "__version__",
]
