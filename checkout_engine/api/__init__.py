from checkout_engine.api.server import create_app, SessionRegistry, HeadlessPrompts

__all__ = ["create_app", "SessionRegistry", "HeadlessPrompts"]
