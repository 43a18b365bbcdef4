#!/usr/bin/env python3
"""
Ask one legal question from the command line.

Usage:
    python scripts/ask.py "Hva er oppsigelsesfristen etter arbeidsmiljøloven?"

    # Print the full response as JSON
    python scripts/ask.py "depositum husleie" --json
"""

import argparse
import asyncio
import json
import logging
import sys
from pathlib import Path

# Add project root to path
root_dir = Path(__file__).parent.parent
sys.path.insert(0, str(root_dir / "src"))

from dotenv import load_dotenv
load_dotenv(root_dir / ".env")

from lovsok.assistant import run_assistant
from lovsok.config import get_settings
from lovsok.services import build_services

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)
logger = logging.getLogger(__name__)


async def ask(question: str, page: int, page_size: int | None, as_json: bool) -> None:
    services = await build_services(get_settings())
    try:
        response = await run_assistant(question, services, page=page, page_size=page_size)
    finally:
        await services.close()

    if as_json:
        print(json.dumps(response.to_dict(), ensure_ascii=False, indent=2))
        return

    print(response.answer)
    print()
    labels = {citation.evidence_id: citation.label for citation in response.citations}
    for item in response.evidence:
        label = labels.get(item.id, "  ")
        print(f"{label} {item.title}")
        if item.link:
            print(f"    {item.link}")


def main():
    parser = argparse.ArgumentParser(description="Ask a question about Norwegian law.")
    parser.add_argument("question", type=str, help="The question, in Norwegian")
    parser.add_argument("--page", type=int, default=1, help="Result page (default: 1)")
    parser.add_argument("--page-size", type=int, default=None, help="Hits per page")
    parser.add_argument("--json", action="store_true", help="Print the full response as JSON")
    args = parser.parse_args()

    try:
        asyncio.run(ask(args.question, args.page, args.page_size, args.json))
    except (ValueError, ConnectionError) as e:
        logger.error(str(e))
        sys.exit(1)


if __name__ == "__main__":
    main()
