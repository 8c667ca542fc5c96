"""Terminal monitor for a streaming session.

This module provides a Rich-based live display with three panels:
1. Top panel: Connection status and messages from the device
2. Bottom-left panel: Active recording (duration, level meter, level history)
3. Bottom-right panel: Finished recordings
"""

import threading
from collections import deque
from datetime import datetime
from typing import Callable, List, Optional

from rich.console import Console
from rich.layout import Layout
from rich.live import Live
from rich.panel import Panel
from rich.table import Table
from rich.text import Text

from .audio_session import RecordingArtifact, RecordingProgress
from .connection_manager import ConnectionState, StatusUpdate
from .utils import format_duration, level_style, scale_level

STATUS_STYLES = {
    ConnectionState.CONNECTED: "green",
    ConnectionState.CONNECTING: "yellow",
    ConnectionState.RECONNECTING: "yellow",
    ConnectionState.FAILED: "red",
    ConnectionState.DISCONNECTED: "dim",
}


class StatusMonitor:
    """Live terminal view of one StreamingService."""

    def __init__(self, max_messages: int = 10, max_level_history: int = 50):
        """Initialize the monitor.

        Args:
            max_messages: Number of device/status messages to keep
            max_level_history: Number of level samples kept for the history graph
        """
        self.console = Console()
        self.max_level_history = max_level_history

        # Callbacks arrive on the event loop; rendering may run elsewhere
        self._lock = threading.Lock()
        self._status: Optional[StatusUpdate] = None
        self._messages: deque = deque(maxlen=max_messages)
        self._levels: deque = deque(maxlen=max_level_history)
        self._progress = RecordingProgress(0.0, 0.0)
        self._recording = False
        self._recordings: List[RecordingArtifact] = []

        self._subscriptions: List[Callable[[], None]] = []
        self._live: Optional[Live] = None
        self._layout: Optional[Layout] = None
        self._running = False

    def attach(self, service):
        """Subscribe to a StreamingService's channels."""
        session = service.session
        self._subscriptions = [
            service.status_changed.subscribe(self.set_status),
            service.text_received.subscribe(self.add_message),
            service.errors.subscribe(lambda e: self.add_message(f"error: {e}")),
            session.recording_started.subscribe(lambda _: self.set_recording(True)),
            session.recording_finished.subscribe(self.add_recording),
            session.amplitude_updated.subscribe(self.update_level),
            session.progress.subscribe(self.set_progress),
        ]
        self.set_status(
            StatusUpdate(
                service.manager.state,
                service.manager.reconnect_attempt,
                service.connection_config.max_reconnect_attempts,
                service.get_connection_status_text(),
            )
        )

    def detach(self):
        for unsubscribe in self._subscriptions:
            unsubscribe()
        self._subscriptions = []

    def set_status(self, update: StatusUpdate):
        with self._lock:
            self._status = update
        self.add_message(f"status: {update.text}")

    def add_message(self, message: str):
        timestamp = datetime.now().strftime("%H:%M:%S")
        with self._lock:
            self._messages.append((timestamp, message))

    def set_recording(self, recording: bool):
        with self._lock:
            self._recording = recording
            if recording:
                self._levels.clear()
                self._progress = RecordingProgress(0.0, 0.0)

    def update_level(self, amplitude: float):
        with self._lock:
            self._levels.append(scale_level(amplitude))

    def set_progress(self, progress: RecordingProgress):
        with self._lock:
            self._progress = progress

    def add_recording(self, artifact: RecordingArtifact):
        with self._lock:
            self._recording = False
            self._recordings.insert(0, artifact)

    # Rendering

    def _create_layout(self) -> Layout:
        layout = Layout()
        layout.split_column(Layout(name="status", ratio=1), Layout(name="audio", ratio=2))
        layout["audio"].split_row(Layout(name="recording"), Layout(name="recordings"))
        return layout

    def _render_status_panel(self) -> Panel:
        with self._lock:
            status = self._status
            messages = list(self._messages)

        content = Text()
        if status is None:
            content.append("Not connected", style="dim")
        else:
            content.append("Connection: ", style="bold")
            content.append(status.text, style=STATUS_STYLES[status.state])

        for timestamp, message in messages:
            content.append(f"\n[{timestamp}] ", style="dim")
            content.append(message)

        return Panel(content, title="[bold]Device", border_style="blue", padding=(0, 1))

    def _render_level_bar(self, level: float, max_width: int = 30) -> str:
        filled_width = int(level * max_width)
        bar = "█" * filled_width + "░" * (max_width - filled_width)
        style = level_style(level)
        return f"[{style}]{bar}[/{style}]"

    def _render_level_history(self, levels: List[float], max_width: int = 35, max_height: int = 6) -> str:
        recent = levels[-max_width:]
        lines = []
        for h in range(max_height, 0, -1):
            threshold = h / max_height
            line = ""
            for level in recent:
                if level >= threshold:
                    style = level_style(level)
                    line += f"[{style}]█[/{style}]"
                else:
                    line += " "
            lines.append(line + " " * (max_width - len(recent)))
        return "\n".join(lines)

    def _render_recording_panel(self) -> Panel:
        with self._lock:
            recording = self._recording
            progress = self._progress
            levels = list(self._levels)

        current = levels[-1] if levels else 0.0

        content = Text()
        if recording:
            content.append("● REC ", style="bold red")
        else:
            content.append("Idle ", style="dim")
        content.append(format_duration(progress.duration), style="bold")
        content.append(f"   Level: {current:.0%}\n\n")
        content.append(Text.from_markup(self._render_level_bar(current)))
        content.append("\n\n")
        content.append(Text.from_markup(self._render_level_history(levels)))

        return Panel(content, title="[bold cyan]Recording", border_style="cyan", padding=(1, 1))

    def _render_recordings_panel(self) -> Panel:
        with self._lock:
            recordings = list(self._recordings)

        table = Table(expand=True, show_edge=False)
        table.add_column("Started")
        table.add_column("Length", justify="right")
        table.add_column("Size", justify="right")
        for artifact in recordings:
            table.add_row(
                artifact.started_at.strftime("%H:%M:%S"),
                artifact.formatted_duration,
                f"{artifact.size_kb:.1f} KB",
            )

        return Panel(table, title="[bold green]Recordings", border_style="green", padding=(1, 1))

    def _render(self) -> Layout:
        if self._layout is None:
            self._layout = self._create_layout()

        self._layout["status"].update(self._render_status_panel())
        self._layout["recording"].update(self._render_recording_panel())
        self._layout["recordings"].update(self._render_recordings_panel())
        return self._layout

    def start(self, refresh_per_second: int = 10):
        """Start the live display.

        Args:
            refresh_per_second: Update frequency in Hz
        """
        if self._running:
            return

        self._running = True
        self._layout = self._create_layout()
        self._live = Live(
            self._render(),
            console=self.console,
            screen=True,
            refresh_per_second=refresh_per_second,
        )
        self._live.start()

    def stop(self):
        if not self._running:
            return

        self._running = False
        if self._live:
            self._live.stop()
            self._live = None

    def update(self):
        """Redraw (call periodically)."""
        if self._running and self._live:
            self._live.update(self._render())

    def is_running(self) -> bool:
        return self._running
