from freshtable.cli import app

app()
