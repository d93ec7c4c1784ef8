#!/usr/bin/env python3
import argparse
import json
import re
import sys
from collections import Counter
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional

TELEMETRY_PATTERN = re.compile(r"chat_telemetry=(\{.*\})")
SECURITY_PATTERN = re.compile(r"security_alert=(\{.*\})")


def _iter_lines(paths: List[str]) -> Iterable[str]:
    if not paths:
        for line in sys.stdin:
            yield line.rstrip("\n")
        return
    for path in paths:
        with open(path, "r", encoding="utf-8", errors="replace") as handle:
            for line in handle:
                yield line.rstrip("\n")


def _parse_payload(pattern: re.Pattern, line: str) -> Optional[Dict[str, Any]]:
    match = pattern.search(line)
    if not match:
        return None
    try:
        value = json.loads(match.group(1))
    except json.JSONDecodeError:
        return None
    if not isinstance(value, dict):
        return None
    return value


def _safe_int(value: Any) -> int:
    try:
        return int(value)
    except (TypeError, ValueError):
        return 0


def build_report(chat_rows: List[Dict[str, Any]], alert_rows: List[Dict[str, Any]]) -> Dict[str, Any]:
    user_counts: Counter[str] = Counter()
    alert_types: Counter[str] = Counter()

    llm_used = 0
    anonymous = 0
    turn_sum = 0
    answer_chars = 0

    for row in chat_rows:
        user_id = str(row.get("user_id", "anonymous"))
        user_counts[user_id] += 1
        if user_id == "anonymous":
            anonymous += 1
        if bool(row.get("llm_used", False)):
            llm_used += 1
        turn_sum += _safe_int(row.get("turns", 0))
        answer_chars += _safe_int(row.get("answer_chars", 0))

    for row in alert_rows:
        alert_types[str(row.get("type", "unknown"))] += 1

    total = len(chat_rows)
    return {
        "total_messages": total,
        "llm_rate": round(llm_used / total, 4) if total else 0.0,
        "fallback_messages": total - llm_used,
        "anonymous_messages": anonymous,
        "avg_turns": round(turn_sum / total, 4) if total else 0.0,
        "avg_answer_chars": round(answer_chars / total, 2) if total else 0.0,
        "top_users": dict(user_counts.most_common(10)),
        "security_alerts": dict(alert_types),
    }


def print_human(report: Dict[str, Any]) -> None:
    print(f"Total messages: {report['total_messages']}")
    print(f"LLM rate: {report['llm_rate']:.2%} (fallbacks={report['fallback_messages']})")
    print(f"Anonymous messages: {report['anonymous_messages']}")
    print(f"Average turns: {report['avg_turns']:.2f}  average answer: {report['avg_answer_chars']:.0f} chars")
    print("Most active users:")
    for user_id, count in report["top_users"].items():
        print(f"  - {user_id}: {count}")
    if report["security_alerts"]:
        print("Critical security alerts:")
        for event_type, count in sorted(report["security_alerts"].items(), key=lambda x: x[1], reverse=True):
            print(f"  - {event_type}: {count}")


def main() -> int:
    parser = argparse.ArgumentParser(description="Summarize chat_telemetry and security_alert log lines.")
    parser.add_argument("log_files", nargs="*", help="Log files to parse. If omitted, read stdin.")
    parser.add_argument("--json-out", default="", help="Optional path to write JSON summary.")
    args = parser.parse_args()

    chat_rows: List[Dict[str, Any]] = []
    alert_rows: List[Dict[str, Any]] = []
    for line in _iter_lines(args.log_files):
        payload = _parse_payload(TELEMETRY_PATTERN, line)
        if payload:
            chat_rows.append(payload)
            continue
        alert = _parse_payload(SECURITY_PATTERN, line)
        if alert:
            alert_rows.append(alert)

    report = build_report(chat_rows, alert_rows)
    print_human(report)

    if args.json_out:
        path = Path(args.json_out)
        path.write_text(json.dumps(report, indent=2) + "\n", encoding="utf-8")
        print(f"Wrote report: {path}")
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
