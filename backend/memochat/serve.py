from __future__ import annotations

import os
import secrets
from pathlib import Path

import uvicorn


def main() -> None:
    """Run the chat API with uvicorn.

    A missing APP_SECRET_KEY is generated once and persisted to ``.env`` in
    the working directory; memories sealed with it are unreadable without it.
    """

    _ensure_app_secret_key(Path.cwd())
    host = os.getenv("APP_HOST", "127.0.0.1")
    port = int(os.getenv("APP_PORT", "8000"))
    uvicorn.run(
        "memochat.main:app",
        host=host,
        port=port,
        log_level=os.getenv("LOG_LEVEL", "info").lower(),
    )


def _ensure_app_secret_key(config_dir: Path) -> None:
    if os.getenv("APP_SECRET_KEY"):
        return

    env_path = config_dir / ".env"
    existing = env_path.read_text(encoding="utf-8").splitlines() if env_path.exists() else []
    for line in existing:
        if line.strip().startswith("APP_SECRET_KEY="):
            raw_value = line.split("=", 1)[1].strip().strip('"').strip("'")
            if raw_value:
                return

    _upsert_env_value(env_path, "APP_SECRET_KEY", secrets.token_urlsafe(48))


def _upsert_env_value(env_path: Path, key: str, value: str) -> None:
    env_path.parent.mkdir(parents=True, exist_ok=True)
    lines = env_path.read_text(encoding="utf-8").splitlines() if env_path.exists() else []
    updated: list[str] = []
    found = False
    for line in lines:
        if line.strip().startswith(f"{key}="):
            updated.append(f'{key}="{value}"')
            found = True
            continue
        updated.append(line)

    if not found:
        if updated and updated[-1].strip():
            updated.append("")
        updated.append(f'{key}="{value}"')

    env_path.write_text("\n".join(updated).rstrip() + "\n", encoding="utf-8")


if __name__ == "__main__":
    main()
