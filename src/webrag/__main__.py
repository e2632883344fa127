"""Entry point: `python -m webrag` starts the API server."""
import uvicorn
from rich.panel import Panel

from .config import APP_ENV, HOST, LLM_MODEL_NAME, LLM_PROVIDER, PORT, WARM_TIMEOUT_S, check_credentials, console


def display_banner():
    console.print(Panel(
        f"[bold cyan]webrag[/bold cyan] question answering over web documents\n"
        f"Mode: {APP_ENV}  |  LLM: {LLM_PROVIDER}/{LLM_MODEL_NAME}  |  Warm deadline: {WARM_TIMEOUT_S:g}s\n"
        f"Listening on http://{HOST}:{PORT}",
        title="Server",
        border_style="cyan",
    ))


def main():
    ok, errors = check_credentials()
    if not ok:
        for error in errors:
            console.print(f"[bold red]Configuration Error:[/bold red] {error}")
        raise SystemExit(1)
    display_banner()
    uvicorn.run("webrag.api_server:app", host=HOST, port=PORT)


if __name__ == "__main__":
    main()
