from cars_arena.app import create_app

__all__ = ["create_app"]
