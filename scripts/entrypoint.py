import logging
import os

logging.basicConfig(level=logging.INFO)
logger = logging.getLogger("entrypoint")


def main() -> None:
  """Launch the orchestrator; schema migrations run as a separate deploy step."""
  port = os.getenv("PORT", "8080")
  logger.info("Starting orchestrator on port %s (run alembic upgrade head in deploy pipeline)...", port)
  # exec so uvicorn receives SIGTERM directly from the platform.
  os.execvp("uvicorn", ["uvicorn", "app.main:app", "--host", "0.0.0.0", "--port", port, "--no-server-header"])


if __name__ == "__main__":
  main()
