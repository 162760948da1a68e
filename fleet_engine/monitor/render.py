# fleet_engine/monitor/render.py
"""Terminal rendering of a FleetView."""

from typing import List

from fleet_engine.core.models import ContainerState, FleetView, HealthSample, Reachability

RED = "\033[0;31m"
GREEN = "\033[0;32m"
YELLOW = "\033[1;33m"
BLUE = "\033[0;34m"
NC = "\033[0m"

CLEAR_SCREEN = "\033[2J\033[H"

_WIDTHS = (11, 16, 10, 23)
_HEADERS = ("Worker", "IP Address", "Status", "Container Status")


def _colour(text: str, colour: str, enabled: bool) -> str:
    return f"{colour}{text}{NC}" if enabled else text


def _cell(text: str, width: int, colour: str = "", enabled: bool = False) -> str:
    text = text if len(text) <= width else text[: width - 1] + "…"
    padded = text.ljust(width)
    return _colour(padded, colour, enabled and bool(colour))


def _reachability_colour(sample: HealthSample) -> str:
    if sample.reachability == Reachability.ONLINE:
        return GREEN
    if sample.reachability == Reachability.OFFLINE:
        return RED
    return YELLOW


def _container_colour(sample: HealthSample) -> str:
    state = sample.container.state
    if state == ContainerState.UP:
        return GREEN
    if state in (ContainerState.NOT_RUNNING, ContainerState.UNKNOWN):
        return YELLOW
    return RED


def _rule(left: str, mid: str, right: str) -> str:
    return left + mid.join("─" * (w + 2) for w in _WIDTHS) + right


def render_table(view: FleetView, colour: bool = True) -> List[str]:
    lines = [
        _rule("┌", "┬", "┐"),
        "│ " + " │ ".join(h.ljust(w) for h, w in zip(_HEADERS, _WIDTHS)) + " │",
        _rule("├", "┼", "┤"),
    ]
    for sample in view.samples:
        cells = [
            _cell(sample.node_name, _WIDTHS[0]),
            _cell(sample.address or "-", _WIDTHS[1]),
            _cell(sample.reachability.value, _WIDTHS[2], _reachability_colour(sample), colour),
            _cell(str(sample.container), _WIDTHS[3], _container_colour(sample), colour),
        ]
        lines.append("│ " + " │ ".join(cells) + " │")
    lines.append(_rule("└", "┴", "┘"))
    return lines


def render_view(view: FleetView, colour: bool = True) -> str:
    """Full monitor frame: timestamp, node table, queue line."""
    stamp = view.taken_at.astimezone().strftime("%Y-%m-%d %H:%M:%S")
    lines = [
        _colour(f"Last Updated: {stamp}", YELLOW, colour),
        "",
        *render_table(view, colour),
        "",
        _colour("RabbitMQ Queue Status:", BLUE, colour),
    ]
    if view.queue is None:
        lines.append("  Queue: not configured")
    else:
        lines.append(f"  {view.queue.describe()}")
    lines.append(f"  Online: {view.online_count()}/{len(view.samples)}")
    return "\n".join(lines)
