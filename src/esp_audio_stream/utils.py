"""Formatting helpers shared by the session and the terminal monitor."""

LEVEL_GAIN = 5.0  # Speech RMS rarely exceeds 0.2; scale it into the meter's range


def format_duration(seconds: float) -> str:
    """Format seconds as MM:SS (minutes keep growing past 59)."""
    minutes, secs = divmod(int(max(seconds, 0.0)), 60)
    return f"{minutes:02d}:{secs:02d}"


def scale_level(amplitude: float, gain: float = LEVEL_GAIN) -> float:
    """Map an RMS amplitude to a 0..1 meter level."""
    return min(max(amplitude * gain, 0.0), 1.0)


def level_style(level: float) -> str:
    """Rich color for a meter level."""
    if level < 0.3:
        return "green"
    if level < 0.7:
        return "yellow"
    return "red"
