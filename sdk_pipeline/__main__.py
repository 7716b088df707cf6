"""Allow running the CLI with ``python -m sdk_pipeline``."""

from sdk_pipeline.cli import app

app(prog_name="sdk-pipeline")
