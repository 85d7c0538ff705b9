"""In-process metrics collector for HTTP and gateway stats."""

from typing import Dict, Any, Optional
from datetime import datetime


class MetricsCollector:
    """Collect runtime counters and basic latency statistics."""

    def __init__(self):
        self.stats = {
            'conversations_created': 0,
            'turns_started': 0,
            'turns_completed': 0,
            'turns_failed': 0,
            'turns_timed_out': 0,
            'turns_rejected_busy': 0,
            'turns_disconnected': 0,
            'turn_total_time': 0.0,
            'http_requests_total': 0,
            'http_errors_total': 0,
            'http_latency_ms_total': 0.0,
            'http_latency_ms_count': 0,
            'start_time': datetime.now()
        }
        self.http_by_path: Dict[str, Dict[str, float]] = {}

    def record_conversation(self):
        """Record one created conversation."""
        self.stats['conversations_created'] += 1

    def record_turn_started(self):
        self.stats['turns_started'] += 1

    def record_turn_finished(self, reason: str, duration: float = 0.0):
        """Record a finished turn by terminal reason."""
        key = {
            'done': 'turns_completed',
            'error': 'turns_failed',
            'unavailable': 'turns_failed',
            'timeout': 'turns_timed_out',
            'busy': 'turns_rejected_busy',
            'disconnected': 'turns_disconnected',
        }.get(reason, 'turns_failed')
        self.stats[key] += 1
        self.stats['turn_total_time'] += duration

    def get_stats(self, multiplexer: Optional[Any] = None) -> Dict[str, Any]:
        """Return aggregated metrics snapshot."""
        uptime = (datetime.now() - self.stats['start_time']).total_seconds()
        finished = (
            self.stats['turns_completed']
            + self.stats['turns_failed']
            + self.stats['turns_timed_out']
            + self.stats['turns_disconnected']
        )

        snapshot = {
            'conversations': {
                'created': self.stats['conversations_created'],
            },
            'turns': {
                'started': self.stats['turns_started'],
                'completed': self.stats['turns_completed'],
                'failed': self.stats['turns_failed'],
                'timed_out': self.stats['turns_timed_out'],
                'rejected_busy': self.stats['turns_rejected_busy'],
                'disconnected': self.stats['turns_disconnected'],
                'avg_time_ms': round(self.stats['turn_total_time'] * 1000 / max(1, finished)),
            },
            'http': {
                'requests_total': self.stats['http_requests_total'],
                'errors_total': self.stats['http_errors_total'],
                'avg_time_ms': round(
                    self.stats['http_latency_ms_total']
                    / max(1, self.stats['http_latency_ms_count']),
                    2,
                ),
            },
            'uptime_seconds': round(uptime)
        }
        if multiplexer is not None:
            snapshot['deltas'] = {
                'forwarded': multiplexer.forwarded_total,
                'dropped': multiplexer.dropped_total,
                'active_sinks': multiplexer.active_count,
            }
        return snapshot

    def record_http_request(self, method: str, path: str, status_code: int, duration_ms: float):
        self.stats['http_requests_total'] += 1
        self.stats['http_latency_ms_total'] += float(duration_ms)
        self.stats['http_latency_ms_count'] += 1
        if int(status_code) >= 400:
            self.stats['http_errors_total'] += 1

        key = f"{method} {path}"
        if key not in self.http_by_path:
            self.http_by_path[key] = {"count": 0, "latency_ms_total": 0.0, "errors": 0}
        self.http_by_path[key]["count"] += 1
        self.http_by_path[key]["latency_ms_total"] += float(duration_ms)
        if int(status_code) >= 400:
            self.http_by_path[key]["errors"] += 1

    def to_prometheus_text(self) -> str:
        lines = []
        counters = [
            ("copilot_gateway_conversations_created_total", "conversations_created", "Conversations created"),
            ("copilot_gateway_turns_started_total", "turns_started", "Turns started"),
            ("copilot_gateway_turns_completed_total", "turns_completed", "Turns finished with done"),
            ("copilot_gateway_turns_failed_total", "turns_failed", "Turns finished with an error"),
            ("copilot_gateway_turns_timed_out_total", "turns_timed_out", "Turns that hit the timeout ceiling"),
            ("copilot_gateway_turns_rejected_busy_total", "turns_rejected_busy", "Turns rejected because the conversation was busy"),
            ("copilot_gateway_turns_disconnected_total", "turns_disconnected", "Turns ended by client disconnect"),
            ("copilot_gateway_http_requests_total", "http_requests_total", "Total HTTP requests"),
            ("copilot_gateway_http_errors_total", "http_errors_total", "Total HTTP error responses"),
        ]
        for name, key, help_text in counters:
            lines.append(f"# HELP {name} {help_text}")
            lines.append(f"# TYPE {name} counter")
            lines.append(f"{name} {self.stats[key]}")
        for path, data in self.http_by_path.items():
            escaped = path.replace('"', '\\"')
            lines.append(
                f'copilot_gateway_http_requests_by_path_total{{path="{escaped}"}} {data["count"]}'
            )
            lines.append(
                f'copilot_gateway_http_errors_by_path_total{{path="{escaped}"}} {data["errors"]}'
            )
        return "\n".join(lines) + "\n"

    def reset(self):
        """Reset all counters."""
        self.__init__()
