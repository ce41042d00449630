#!/usr/bin/env python3
"""
Playback Session Report Generator

Queries a running streamperf diagnostics API and prints the session's
performance summary, streaming parameters, resource usage and CDN state
as tables.

Usage:
    python scripts/performance/session_report.py --api-url http://localhost:8085
"""

import argparse
import sys
from datetime import datetime
from typing import Any, Dict, List, Optional

import requests
from tabulate import tabulate


class DiagnosticsClient:
    """Query the streamperf diagnostics API."""

    def __init__(self, base_url: str, timeout: float = 10.0):
        """
        Initialize diagnostics client.

        Args:
            base_url: Diagnostics API URL (e.g., http://localhost:8085)
            timeout: Request timeout in seconds
        """
        self.base_url = base_url.rstrip('/')
        self.timeout = timeout

    def get(self, path: str) -> Optional[Dict]:
        """
        Fetch one diagnostics endpoint.

        Args:
            path: Endpoint path (e.g., /api/summary)

        Returns:
            Decoded JSON body or None on error
        """
        try:
            response = requests.get(f"{self.base_url}{path}", timeout=self.timeout)
            response.raise_for_status()
            return response.json()
        except requests.RequestException as e:
            print(f"Error querying {path}: {e}", file=sys.stderr)
            return None


def flatten(data: Dict[str, Any], prefix: str = "") -> List[List[Any]]:
    """Flatten nested dicts into [key, value] rows with dotted keys."""
    rows: List[List[Any]] = []
    for key, value in data.items():
        name = f"{prefix}.{key}" if prefix else str(key)
        if isinstance(value, dict):
            rows.extend(flatten(value, name))
        elif isinstance(value, list):
            rows.append([name, ", ".join(str(v) for v in value) if value else "-"])
        else:
            rows.append([name, "-" if value is None else value])
    return rows


def format_section(title: str, data: Optional[Dict[str, Any]]) -> List[str]:
    """Render one report section as lines."""
    lines = [title, "-" * 80]
    if data:
        lines.append(tabulate(flatten(data), headers=["Metric", "Value"], tablefmt="simple"))
    else:
        lines.append(f"  No {title.lower()} data available")
    lines.append("")
    return lines


def format_endpoints(cdn: Optional[Dict[str, Any]]) -> List[str]:
    """Render the per-endpoint CDN table."""
    lines = ["CDN ENDPOINTS", "-" * 80]
    status = (cdn or {}).get("status") or {}
    endpoints = status.get("primary", []) + status.get("fallback", [])
    if not endpoints:
        lines.append("  No CDN endpoints configured")
        lines.append("")
        return lines

    failed = set(status.get("failed", []))
    metrics = status.get("metrics", {})
    table = []
    for endpoint in endpoints:
        m = metrics.get(endpoint, {})
        table.append([
            endpoint,
            "primary" if endpoint in status.get("primary", []) else "fallback",
            "*" if endpoint == status.get("current") else "",
            "FAILED" if endpoint in failed else "ok",
            m.get("total_requests", 0),
            f"{m.get('success_rate', 0.0) * 100:.0f}%",
            f"{m.get('latency', 0.0):.0f}ms",
        ])
    lines.append(tabulate(
        table,
        headers=["Endpoint", "Tier", "Current", "State", "Requests", "Success", "Latency"],
        tablefmt="simple"
    ))
    lines.append("")
    return lines


class SessionReport:
    """Generate a session report from the diagnostics API."""

    def __init__(self, api_url: str):
        self.client = DiagnosticsClient(api_url)

    def generate_report(self) -> str:
        """Generate formatted session report."""
        summary = self.client.get("/api/summary")
        params = self.client.get("/api/streaming-parameters")
        resources = self.client.get("/api/resources")
        cdn = self.client.get("/api/cdn")

        output = []
        output.append("=" * 80)
        output.append("STREAMPERF SESSION REPORT")
        output.append("=" * 80)
        output.append(f"Generated: {datetime.now().strftime('%Y-%m-%d %H:%M:%S')}")
        if summary:
            overall = summary.get("overall", {})
            output.append(f"Overall: {overall.get('score', 0)} ({overall.get('status', 'unknown')})")
        output.append("")

        if summary:
            for section in ("buffer", "network", "segments", "quality", "memory"):
                output.extend(format_section(section.upper(), summary.get(section)))
        else:
            output.extend(format_section("SUMMARY", None))

        output.extend(format_section("STREAMING PARAMETERS", params))

        if resources:
            recommendations = resources.pop("recommendations", [])
            output.extend(format_section("RESOURCES", resources))
            output.append("RECOMMENDATIONS")
            output.append("-" * 80)
            if recommendations:
                output.append(tabulate(
                    [[r["priority"], r["type"], r["message"]] for r in recommendations],
                    headers=["Priority", "Type", "Message"],
                    tablefmt="simple"
                ))
            else:
                output.append("  No recommendations")
            output.append("")
        else:
            output.extend(format_section("RESOURCES", None))

        output.extend(format_endpoints(cdn))
        if cdn:
            output.extend(format_section("REQUESTS", cdn.get("metrics")))

        output.append("=" * 80)
        return "\n".join(output)


def main():
    """Main entry point."""
    parser = argparse.ArgumentParser(description='Generate streamperf session report')
    parser.add_argument(
        '--api-url',
        default='http://localhost:8085',
        help='Diagnostics API URL (default: http://localhost:8085)'
    )
    parser.add_argument(
        '--output',
        help='Output file path (default: print to stdout)'
    )

    args = parser.parse_args()

    reporter = SessionReport(args.api_url)
    report = reporter.generate_report()

    if args.output:
        with open(args.output, 'w') as f:
            f.write(report)
        print(f"Report written to: {args.output}")
    else:
        print(report)


if __name__ == '__main__':
    main()
