# concierge/main.py
"""
Concierge CLI entrypoint.

Text in -> ConciergeCore -> text out, against the local data dir.

Commands inside the prompt:
- /archive : list archived chunk summaries
- /spend   : today's and this month's spend
- /clear   : forget the live window and the whole archive
- exit     : quit

Ctrl-C while a reply is being generated stops that turn; Ctrl-C at the
prompt quits.
"""

import argparse
from typing import List, Optional

from concierge.config.settings import load_settings
from concierge.core.chat import ConciergeCore, create_core
from concierge.core.state import TurnState
from concierge.memory.chunk_store import format_date_range


def build_parser() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(description="Concierge CLI (text chat with archived long-term memory).")
    p.add_argument("--data-dir", default=None, help="Override CONCIERGE_DATA_DIR for this session.")
    p.add_argument("--model", default=None, help="Override CONCIERGE_MODEL for this session.")
    return p


def _print_archive(core: ConciergeCore) -> None:
    chunks = core.store.list_summaries()
    if not chunks:
        print("[archive] empty")
        return
    for i, c in enumerate(chunks, start=1):
        print(f"[{i}] {c.id} {c.kind.value} {c.size_label} {format_date_range(c.start, c.end)}")
        print(f"    {c.summary}")


def _print_spend(core: ConciergeCore) -> None:
    snap = core.budget.snapshot()
    print(f"[spend] today=${snap.today:.4f} month=${snap.month:.4f}")


def _run_turn(core: ConciergeCore, text: str) -> None:
    future = core.submit_user_message(text)
    while True:
        try:
            result = future.result()
            break
        except KeyboardInterrupt:
            core.stop()
            print("\n[stopping...]")

    if result.state == TurnState.FAILED:
        print(f"Concierge (error): {result.reply}\n")
    elif result.reply:
        print(f"Concierge: {result.reply}\n")


def main(argv: Optional[List[str]] = None) -> None:
    args = build_parser().parse_args(argv)

    settings = load_settings()
    if args.data_dir:
        settings.data_dir = args.data_dir
    if args.model:
        settings.model = args.model

    core = create_core(settings)
    print("Concierge (text). Type 'exit' to quit.\n")

    try:
        while True:
            try:
                user = input("You: ").strip()
            except (EOFError, KeyboardInterrupt):
                print("\n[Session ended]")
                break

            if not user:
                continue
            if user.lower() in {"exit", "quit"}:
                print("Concierge: Goodbye.")
                break
            if user == "/archive":
                _print_archive(core)
                continue
            if user == "/spend":
                _print_spend(core)
                continue
            if user == "/clear":
                core.clear_memory()
                print("[memory cleared]")
                continue

            _run_turn(core, user)
    finally:
        core.shutdown()


if __name__ == "__main__":
    main()
