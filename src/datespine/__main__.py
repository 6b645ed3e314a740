from datespine.cli.app import app

app()
