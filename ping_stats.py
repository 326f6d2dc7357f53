"""
ping_stats.py - Round-trip and packet-loss bookkeeping for my_ping.
"""

from dataclasses import dataclass

MIN_TIME_SENTINEL = 99999999


@dataclass
class Summary:
    """Final figures derived from :class:`Statistics`."""

    transmitted: int
    received: int
    duplicates: int
    loss: int
    min_time: int | None = None
    avg_time: int | None = None
    max_time: int | None = None


@dataclass
class Statistics:
    """Running totals for one ping session.

    Times are whole milliseconds. ``min_time`` starts at a sentinel larger
    than any real round-trip time and is only reported once a time has been
    recorded.
    """

    transmitted: int = 0
    received: int = 0
    duplicates: int = 0
    timed: int = 0
    min_time: int = MIN_TIME_SENTINEL
    max_time: int = 0
    total_time: int = 0

    def record_transmitted(self) -> None:
        self.transmitted += 1

    def record_reply(self, triptime: int | None = None) -> None:
        """Count one accepted reply, with its round-trip time if known."""
        self.received += 1
        if triptime is None:
            return
        self.timed += 1
        self.total_time += triptime
        if triptime < self.min_time:
            self.min_time = triptime
        if triptime > self.max_time:
            self.max_time = triptime

    def record_duplicate(self) -> None:
        self.duplicates += 1

    def summarize(self) -> Summary:
        """Compute loss percentage and min/avg/max.

        Returns:
            A :class:`Summary`. Loss is truncated to a whole percentage and
            is 0 when nothing was transmitted; the average is truncated to
            whole milliseconds.
        """
        loss = 0
        if self.transmitted > 0:
            loss = (self.transmitted - self.received) * 100 // self.transmitted

        summary = Summary(self.transmitted, self.received, self.duplicates, loss)
        if self.timed > 0:
            summary.min_time = self.min_time
            summary.avg_time = self.total_time // self.timed
            summary.max_time = self.max_time
        return summary


def format_report(hostname: str, stats: Statistics, timing: bool) -> list[str]:
    """Render the closing statistics block.

    Args:
        hostname: Target name as displayed in the ``PING`` line.
        stats:    Final session statistics.
        timing:   Whether round-trip times were measured.

    Returns:
        Report lines, without trailing newlines.
    """
    summary = stats.summarize()

    counts = (
        f"{summary.transmitted} packets transmitted, "
        f"{summary.received} packets received, "
        f"{summary.loss}% packet loss"
    )

    lines = [f"--- {hostname} ping statistics ---", counts]
    if timing and summary.received > 0 and summary.min_time is not None:
        lines.append(
            f"round-trip min/avg/max = "
            f"{summary.min_time}/{summary.avg_time}/{summary.max_time} ms"
        )
    return lines


def print_report(hostname: str, stats: Statistics, timing: bool) -> None:
    """Print the statistics block preceded by a blank line."""
    print()
    for line in format_report(hostname, stats, timing):
        print(line)
