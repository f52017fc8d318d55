"""Exam Session Engine - Command Line Interface"""

import argparse
import sys
import json
import logging

from config.settings import LOG_LEVEL

logging.basicConfig(
    level=getattr(logging, LOG_LEVEL.upper(), logging.INFO),
    format='%(levelname)s: %(message)s'
)


def cmd_inspect(args):
    """Show every persisted key of a mock"""
    from config.settings import STORE_FILE
    from engine.mock_exam_engine import mock_namespace
    from storage.local_store import LocalStore

    store = LocalStore(STORE_FILE)

    print(f"\n🔍 MOCK {args.mock_id}")
    print("="*50)

    found = 0
    for prefix in mock_namespace(args.mock_id):
        keys = store.keys(prefix)
        if not keys:
            continue
        print(f"\n📂 {prefix}")
        for key in keys:
            value = store.get(key)
            if args.raw:
                print(f"   {key} = {value}")
                continue
            try:
                pretty = json.dumps(json.loads(value), indent=2, sort_keys=True)
            except ValueError:
                pretty = value
            print(f"   {key} =")
            for line in pretty.splitlines():
                print(f"      {line}")
        found += len(keys)

    if not found:
        print("\n📭 Nothing persisted for this mock")


def cmd_abandon(args):
    """Clear saved progress without submitting"""
    from config.settings import STORE_FILE
    from engine.mock_exam_engine import clear_mock
    from storage.json_storage import ProgressStorage
    from storage.local_store import LocalStore

    store = LocalStore(STORE_FILE)

    if args.section:
        progress = ProgressStorage(store)
        if not progress.exists(args.section, args.mock):
            print(f"⚠️  No saved progress for section {args.section}")
            return
        progress.clear(args.section, args.mock)
        print(f"✅ Abandoned section {args.section}")
        return

    if args.mock:
        removed = clear_mock(store, args.mock)
        print(f"✅ Abandoned mock {args.mock} ({removed} keys removed)")
        return

    print("❌ Give --section and/or --mock")


def cmd_attempts(args):
    """List archived mock attempts of a candidate"""
    from storage.json_storage import MockExamStorage

    storage = MockExamStorage()
    mock_ids = storage.list_candidate_attempts(args.candidate_id)

    print(f"\n📋 MOCK ATTEMPTS: {args.candidate_id}")
    print("="*50)

    if not mock_ids:
        print("No finished mocks")
        return

    for mock_id in mock_ids:
        record = storage.load_mock_attempt(args.candidate_id, mock_id) or {}
        outcomes = record.get("stage_outcomes", {})
        results = record.get("stage_results", {})

        flag = " 🚪 early exit" if record.get("early_exit") else ""
        print(f"\n🎯 {mock_id}{flag}")
        for stage, outcome in outcomes.items():
            result = results.get(stage)
            if result:
                print(f"   {stage}: {result.get('correctCount', 0)}/{result.get('totalCount', 0)} ({outcome})")
            else:
                print(f"   {stage}: {outcome}")


def cmd_serve(args):
    """Start web interface"""
    import subprocess

    print("🚀 Starting Exam Session Engine...")
    print(f"   Open http://localhost:{args.port} in your browser")

    subprocess.run([
        sys.executable, "-m", "streamlit", "run",
        "ui/app.py",
        "--server.port", str(args.port)
    ])


def main(argv=None):
    parser = argparse.ArgumentParser(description="Exam Session Engine")
    subparsers = parser.add_subparsers(dest='command', help='Commands')

    # Inspect command
    inspect_parser = subparsers.add_parser('inspect', help='Show persisted state of a mock')
    inspect_parser.add_argument('mock_id', help='Mock ID')
    inspect_parser.add_argument('--raw', action='store_true', help='Print values as stored')
    inspect_parser.set_defaults(func=cmd_inspect)

    # Abandon command
    abandon_parser = subparsers.add_parser('abandon', help='Clear saved progress')
    abandon_parser.add_argument('--section', '-s', help='Section ID')
    abandon_parser.add_argument('--mock', '-m', help='Mock ID')
    abandon_parser.set_defaults(func=cmd_abandon)

    # Attempts command
    attempts_parser = subparsers.add_parser('attempts', help='List finished mocks')
    attempts_parser.add_argument('candidate_id', help='Candidate ID')
    attempts_parser.set_defaults(func=cmd_attempts)

    # Serve command
    serve_parser = subparsers.add_parser('serve', help='Start web UI')
    serve_parser.add_argument('--port', type=int, default=8501)
    serve_parser.set_defaults(func=cmd_serve)

    args = parser.parse_args(argv)

    if args.command:
        args.func(args)
    else:
        parser.print_help()


if __name__ == "__main__":
    main()
