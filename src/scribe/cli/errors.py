"""Scribe rich error messages: actionable feedback.

Every error shown to the user must contain:
  1. What went wrong (clear cause)
  2. The exact action the user should take to fix it

Usage:
    from scribe.cli.errors import err_no_api_key, err_no_db
    console.print(err_no_api_key("openai"))
    raise typer.Exit(1)
"""

from __future__ import annotations

from scribe.errors import (
    AIServiceUnavailable,
    InvalidInput,
    NotFound,
    ScribeError,
    VersionConflict,
)


def err_no_api_key(provider: str) -> str:
    """No API key for *provider*.

    Example:
        No API key for 'openai'. Set:  export OPENAI_API_KEY=sk-...
    """
    env_map = {
        "openai": "OPENAI_API_KEY",
        "openrouter": "OPENROUTER_API_KEY",
        "anthropic": "ANTHROPIC_API_KEY",
        "cohere": "COHERE_API_KEY",
        "gemini": "GEMINI_API_KEY",
        "mistral": "MISTRAL_API_KEY",
        "azure": "AZURE_API_KEY",
    }
    env_var = env_map.get(provider.lower(), f"{provider.upper()}_API_KEY")
    return (
        f"[red]Error:[/] No API key for '{provider}'.\n"
        f"  Set:  export {env_var}=sk-..."
    )


def err_no_db(db_path: str = ".scribe.db") -> str:
    """No .scribe.db found."""
    return (
        f"[red]Error:[/] No database found at '{db_path}'.\n"
        "  Run:  scribe init"
    )


def err_ssrf_blocked(url: str) -> str:
    """URL resolves to a private/reserved address."""
    return (
        f"[red]Error:[/] URL resolves to private address (SSRF protection): '{url}'\n"
        "  Use a publicly reachable URL."
    )


def err_config(message: str) -> str:
    """Config file is invalid (forbidden key, value out of range)."""
    return (
        f"[red]Error:[/] Invalid configuration.\n"
        f"  {message}\n"
        "  Fix scribe.yaml or ~/.scribe/config.yaml and retry."
    )


def err_no_evidence(project: str) -> str:
    """Drafting needs at least one retrieved chunk."""
    return (
        f"[red]Error:[/] No evidence found for project '{project}'.\n"
        "  Run:  scribe ingest --source <file-or-url>  first."
    )


def err_version_conflict(exc: VersionConflict) -> str:
    """Stored draft moved on while we were editing."""
    return (
        f"[red]Error:[/] Draft was changed elsewhere "
        f"(expected version {exc.expected}, stored {exc.actual}).\n"
        "  Re-run the command to draft on top of the latest version."
    )


def err_pipeline(exc: ScribeError) -> str:
    """Map a pipeline error to a message with a next step."""
    if isinstance(exc, VersionConflict):
        return err_version_conflict(exc)
    if isinstance(exc, InvalidInput):
        hint = "Check the command arguments."
    elif isinstance(exc, AIServiceUnavailable):
        hint = "The model provider is unavailable. Check your API key and retry later."
    elif isinstance(exc, NotFound):
        hint = "Run:  scribe status  to see what is stored."
    else:
        hint = "Retry; if it keeps failing, run with --verbose for details."
    return f"[red]Error:[/] {exc.message}\n  {hint}"
