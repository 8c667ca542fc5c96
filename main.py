#!/usr/bin/env python3
"""
ESP32 Audio Recorder
Connects to an ESP32 microphone over WebSocket (or raw TCP), records the
streamed PCM to WAV files and plays recordings back.
"""

import asyncio
import argparse
import os
import logging
import signal
import sys
from pathlib import Path

from dotenv import load_dotenv

from esp_audio_stream import wav_container
from esp_audio_stream.audio_session import AudioSession
from esp_audio_stream.config import (
    DEFAULT_CONNECT_TIMEOUT,
    DEFAULT_MAX_RECONNECT_ATTEMPTS,
    DEFAULT_PATH,
    DEFAULT_WEBSOCKET_PORT,
    TRANSPORT_WEBSOCKET,
    TRANSPORTS,
    AudioStreamConfig,
    ConnectionConfig,
)
from esp_audio_stream.errors import AudioStreamError
from esp_audio_stream.recording_store import DirectoryRecordingStore
from esp_audio_stream.streaming_service import StreamingService

logger = logging.getLogger(__name__)


async def play_file(path: Path, output_device=None):
    """Play a WAV file produced by this tool."""
    from esp_audio_stream.audio_output_handler import SpeakerPlayer

    data = wav_container.decode(path.read_bytes())
    config = AudioStreamConfig(
        sample_rate=data.sample_rate,
        channels=data.channels,
        bits_per_sample=data.bits_per_sample,
        output_device=output_device,
    )
    session = AudioSession(config, player=SpeakerPlayer(config))

    finished = asyncio.Event()
    session.playback_finished.subscribe(lambda _: finished.set())

    logger.info(f"Playing {path} ({data.duration:.1f}s)")
    session.play_audio_data(data.pcm)
    try:
        await finished.wait()
    finally:
        session.stop_playing()


def install_stop_handlers(stop: asyncio.Event) -> list:
    """Route SIGINT/SIGTERM to ``stop`` so recording ends cleanly."""
    loop = asyncio.get_running_loop()
    installed = []
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, stop.set)
            installed.append(sig)
        except NotImplementedError:
            pass  # Windows doesn't support add_signal_handler
    return installed


def remove_stop_handlers(signals: list):
    loop = asyncio.get_running_loop()
    for sig in signals:
        loop.remove_signal_handler(sig)


async def wait_for_stop(stop: asyncio.Event, duration: float) -> bool:
    """Wait ``duration`` seconds (0 = forever) or until ``stop`` is set.

    Returns:
        True if stopped by the event, False if the duration elapsed
    """
    if duration <= 0:
        await stop.wait()
        return True

    try:
        await asyncio.wait_for(stop.wait(), timeout=duration)
        return True
    except asyncio.TimeoutError:
        return False


async def record(service: StreamingService, duration: float, tui: bool):
    """Connect, record for ``duration`` seconds (0 = until Ctrl+C) and save."""
    monitor = None
    ui_task = None
    if tui:
        from esp_audio_stream.status_monitor import StatusMonitor

        monitor = StatusMonitor()
        monitor.attach(service)
        monitor.start()

        async def refresh():
            while True:
                monitor.update()
                await asyncio.sleep(0.1)

        ui_task = asyncio.create_task(refresh())
    else:
        service.status_changed.subscribe(
            lambda update: logger.info(f"Connection: {update.text}")
        )

    try:
        async with service:
            timeout = service.connection_config.connect_timeout
            if not await service.wait_until_connected(timeout=timeout * 2):
                logger.error(
                    f"Could not connect to {service.connection_config.endpoint} "
                    f"({service.get_connection_status_text()})"
                )
                return

            await service.start_recording()
            logger.info(
                f"Recording {'until Ctrl+C' if duration <= 0 else f'for {duration:.0f}s'}..."
            )

            stop = asyncio.Event()
            installed = install_stop_handlers(stop)
            try:
                if await wait_for_stop(stop, duration):
                    logger.info("Interrupted by user")
            except asyncio.CancelledError:
                logger.info("Interrupted by user")
            finally:
                remove_stop_handlers(installed)

            artifact = await service.stop_recording()
            if artifact is None:
                logger.warning("No audio received")
            else:
                reference = service.references.get(artifact.id, "memory")
                logger.info(
                    f"Saved {artifact.formatted_duration} "
                    f"({artifact.size_kb:.1f} KB) to {reference}"
                )
    finally:
        if ui_task is not None:
            ui_task.cancel()
        if monitor is not None:
            monitor.detach()
            monitor.stop()


async def main():
    """Main entry point."""
    # Load environment variables from .env file
    load_dotenv()

    parser = argparse.ArgumentParser(
        description="ESP32 Audio Recorder - record PCM streamed by an ESP32 to WAV"
    )

    # Device management
    parser.add_argument(
        "-l", "--list-devices",
        action="store_true",
        help="List available audio output devices and exit"
    )
    parser.add_argument(
        "-o", "--output-device",
        type=int,
        help="Audio output device index (see --list-devices)"
    )
    parser.add_argument(
        "--play",
        type=Path,
        metavar="FILE",
        help="Play a recorded WAV file and exit"
    )

    # ESP32 connection
    parser.add_argument(
        "--host",
        help="ESP32 host or IP address (or set ESP32_HOST env var)"
    )
    parser.add_argument(
        "--port",
        type=int,
        help=f"ESP32 port (or set ESP32_PORT env var, default: {DEFAULT_WEBSOCKET_PORT})"
    )
    parser.add_argument(
        "--path",
        help=f"WebSocket path (or set ESP32_PATH env var, default: {DEFAULT_PATH})"
    )
    parser.add_argument(
        "--transport",
        choices=TRANSPORTS,
        help=f"Wire protocol (or set ESP32_TRANSPORT env var, default: {TRANSPORT_WEBSOCKET})"
    )
    parser.add_argument(
        "--timeout",
        type=float,
        default=DEFAULT_CONNECT_TIMEOUT,
        help=f"Connect timeout in seconds (default: {DEFAULT_CONNECT_TIMEOUT:.0f})"
    )
    parser.add_argument(
        "--max-reconnects",
        type=int,
        default=DEFAULT_MAX_RECONNECT_ATTEMPTS,
        help=f"Reconnection attempts before giving up (default: {DEFAULT_MAX_RECONNECT_ATTEMPTS})"
    )

    # Recording
    parser.add_argument(
        "-d", "--duration",
        type=float,
        default=0,
        help="Recording length in seconds (default: until Ctrl+C)"
    )
    parser.add_argument(
        "--output-dir",
        type=Path,
        default=Path("recordings"),
        help="Directory for WAV files (default: ./recordings)"
    )
    parser.add_argument(
        "--monitor",
        action="store_true",
        help="Play incoming audio on the speaker while recording"
    )
    parser.add_argument(
        "--tui",
        action="store_true",
        help="Show the live terminal monitor"
    )

    # Logging
    parser.add_argument(
        "-v", "--verbose",
        action="store_true",
        help="Enable verbose logging"
    )

    args = parser.parse_args()

    # Set up logging
    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s"
    )

    # List devices if requested
    if args.list_devices:
        from esp_audio_stream.audio_output_handler import list_output_devices

        list_output_devices()
        return

    if args.play is not None:
        try:
            await play_file(args.play, args.output_device)
        except (OSError, AudioStreamError) as e:
            logger.error(f"Cannot play {args.play}: {e}")
            sys.exit(1)
        return

    # Get ESP32 connection details
    host = args.host or os.environ.get("ESP32_HOST")
    if not host:
        logger.error("ESP32 host must be provided via --host or the ESP32_HOST environment variable")
        sys.exit(1)

    try:
        connection_config = ConnectionConfig(
            host=host,
            port=args.port or int(os.environ.get("ESP32_PORT", DEFAULT_WEBSOCKET_PORT)),
            path=args.path or os.environ.get("ESP32_PATH", DEFAULT_PATH),
            connect_timeout=args.timeout,
            max_reconnect_attempts=args.max_reconnects,
            transport=args.transport or os.environ.get("ESP32_TRANSPORT", TRANSPORT_WEBSOCKET),
        )
        audio_config = AudioStreamConfig(
            realtime_monitoring=args.monitor,
            output_device=args.output_device,
        )
    except ValueError as e:
        logger.error(f"Invalid configuration: {e}")
        sys.exit(1)

    monitor_sink = None
    if args.monitor:
        from esp_audio_stream.audio_output_handler import SpeakerMonitorSink

        monitor_sink = SpeakerMonitorSink(audio_config)

    service = StreamingService(
        connection_config,
        audio_config,
        monitor_sink=monitor_sink,
        store=DirectoryRecordingStore(args.output_dir),
    )

    try:
        await record(service, args.duration, args.tui)
    except AudioStreamError as e:
        logger.error(f"Error: {e}", exc_info=args.verbose)
        sys.exit(1)


if __name__ == "__main__":
    try:
        asyncio.run(main())
    except KeyboardInterrupt:
        pass
