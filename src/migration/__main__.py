from src.migration.cli import cli

cli(prog_name="python -m src.migration")
