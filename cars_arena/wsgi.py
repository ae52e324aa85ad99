from cars_arena.app import create_app

app = create_app()
