from pets.cli import app

app()
