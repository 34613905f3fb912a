from __future__ import annotations

import sys
from pathlib import Path

sys.path.insert(0, str(Path(__file__).resolve().parents[1]))

from tradersmind.config import get_settings


def main() -> int:
    settings = get_settings()

    required = {
        "DISCORD_BOT_TOKEN": settings.discord_bot_token,
        "DISCORD_APPLICATION_ID": settings.discord_application_id,
    }
    optional = {
        "ALPHA_VANTAGE_API_KEY": settings.alpha_vantage_api_key,
    }

    missing_required = [name for name, value in required.items() if not str(value or "").strip()]

    print("Environment check")
    print("=================")
    for name, value in required.items():
        print(f"[{'ok' if value else 'missing'}] {name} (required)")
    for name, value in optional.items():
        print(f"[{'ok' if value else 'missing'}] {name} (optional)")

    print("\nRetention")
    print(f"  message retention:   {settings.message_retention_hours:g} h")
    print(f"  safety margin:       {settings.retention_safety_margin_hours:g} h")
    print(f"  cleanup interval:    {settings.cleanup_interval_minutes} min")
    print(f"  orphan sweep every:  {settings.orphan_sweep_every} cycles")
    print(f"  thread archive:      {settings.thread_archive_minutes} min")

    if missing_required:
        print("\nMissing required environment variables:")
        for item in missing_required:
            print(f"- {item}")
        return 1

    print("\nAll required environment variables are present.")
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
