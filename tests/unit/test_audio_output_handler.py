"""Unit tests for the sounddevice speaker sinks.

These tests verify the core functionality of SpeakerMonitorSink and SpeakerPlayer:
- Start/stop lifecycle (OutputStream mocked)
- Audio callback (int16 -> float32 conversion)
- Underrun detection and silence padding
- Finite playback stopping itself and reporting completion
- Error handling in the audio callback
- Metrics tracking
"""

import pytest

try:
    import sounddevice as sd
except OSError:
    pytest.skip("PortAudio library not available", allow_module_level=True)

import numpy as np
from unittest.mock import Mock, patch
from esp_audio_stream.audio_output_handler import (
    OutputMetrics,
    SpeakerMonitorSink,
    SpeakerPlayer,
)
from esp_audio_stream.config import AudioStreamConfig

STREAM = "esp_audio_stream.audio_output_handler.sd.OutputStream"


@pytest.fixture
def config():
    return AudioStreamConfig()


class TestSpeakerMonitorSinkLifecycle:
    """Test SpeakerMonitorSink start/stop."""

    def test_start_opens_stream(self, config):
        """Test the stream is created with the configured format."""
        with patch(STREAM) as mock_stream_class:
            sink = SpeakerMonitorSink(config)
            sink.start()

            kwargs = mock_stream_class.call_args.kwargs
            assert kwargs["samplerate"] == 16000
            assert kwargs["channels"] == 1
            assert kwargs["blocksize"] == 1600
            assert kwargs["dtype"] == "float32"
            assert kwargs["device"] is None
            mock_stream_class.return_value.start.assert_called_once()

    def test_start_twice_warns(self, config):
        """Test a second start does not open another stream."""
        with patch(STREAM) as mock_stream_class:
            sink = SpeakerMonitorSink(config)
            sink.start()
            sink.start()

            assert mock_stream_class.call_count == 1

    def test_stop_closes_stream(self, config):
        """Test stop stops and closes the stream."""
        with patch(STREAM) as mock_stream_class:
            sink = SpeakerMonitorSink(config)
            sink.start()
            sink.stop()

            stream = mock_stream_class.return_value
            stream.stop.assert_called_once()
            stream.close.assert_called_once()
            assert sink._output_stream is None

    def test_stop_without_start(self, config):
        """Test stop is harmless before start."""
        SpeakerMonitorSink(config).stop()

    def test_start_failure_raises(self, config):
        """Test stream creation errors are recorded and re-raised."""
        with patch(STREAM, side_effect=RuntimeError("no device")):
            sink = SpeakerMonitorSink(config)

            with pytest.raises(RuntimeError):
                sink.start()

            assert sink.get_metrics()["errors"] == 1
            assert sink.get_metrics()["last_error"] == "no device"

    def test_write_before_start_ignored(self, config):
        """Test chunks are dropped while the stream is closed."""
        sink = SpeakerMonitorSink(config)

        sink.write(b"\x01\x00")

        assert sink.get_metrics()["buffered_samples"] == 0

    def test_context_manager(self, config):
        """Test with-statement usage."""
        with patch(STREAM) as mock_stream_class:
            with SpeakerMonitorSink(config):
                mock_stream_class.return_value.start.assert_called_once()

            mock_stream_class.return_value.close.assert_called_once()


class TestSpeakerMonitorSinkCallback:
    """Test the audio callback."""

    def test_converts_int16_to_float32(self, config):
        """Test samples are scaled into [-1, 1]."""
        with patch(STREAM):
            sink = SpeakerMonitorSink(config)
            sink.start()
            sink.write(np.array([32767, -32767, 0, 16384], dtype="<i2").tobytes())
            outdata = np.zeros((4, 1), dtype=np.float32)

            sink._audio_callback(outdata, 4, None, None)

            np.testing.assert_allclose(outdata[:, 0], [1.0, -1.0, 0.0, 16384 / 32767.0], rtol=1e-6)
            assert sink.get_metrics()["blocks_played"] == 1
            assert sink.get_metrics()["underruns"] == 0

    def test_underrun_plays_silence(self, config):
        """Test an empty buffer produces silence and counts an underrun."""
        with patch(STREAM):
            sink = SpeakerMonitorSink(config)
            sink.start()
            outdata = np.ones((8, 1), dtype=np.float32)

            sink._audio_callback(outdata, 8, None, None)

            assert np.all(outdata == 0)
            assert sink.get_metrics()["underruns"] == 1

    def test_status_recorded(self, config):
        """Test callback status flags are counted as errors."""
        with patch(STREAM):
            sink = SpeakerMonitorSink(config)
            sink.start()
            outdata = np.zeros((4, 1), dtype=np.float32)

            sink._audio_callback(outdata, 4, None, "output underflow")

            assert sink.get_metrics()["errors"] == 1
            assert sink.get_metrics()["last_error"] == "output underflow"

    def test_callback_error_fills_silence(self, config):
        """Test an exception in the callback is logged and silenced."""
        with patch(STREAM):
            sink = SpeakerMonitorSink(config)
            sink.start()
            sink._buffer = Mock()
            sink._buffer.buffer_size.side_effect = RuntimeError("boom")
            outdata = np.ones((4, 1), dtype=np.float32)

            sink._audio_callback(outdata, 4, None, None)

            assert np.all(outdata == 0)
            assert sink.get_metrics()["last_error"] == "boom"


class TestSpeakerPlayer:
    """Test finite playback."""

    def test_play_opens_stream_with_finished_callback(self, config):
        """Test playback registers a finished callback."""
        with patch(STREAM) as mock_stream_class:
            player = SpeakerPlayer(config)
            player.play(b"\x01\x00" * 10, Mock())

            kwargs = mock_stream_class.call_args.kwargs
            assert kwargs["finished_callback"] is not None
            assert player.get_metrics()["buffered_samples"] == 10

    def test_stops_when_drained(self, config):
        """Test the callback raises CallbackStop once all audio is played."""
        with patch(STREAM):
            player = SpeakerPlayer(config)
            player.play(b"\x01\x00" * 6, Mock())
            outdata = np.zeros((4, 1), dtype=np.float32)

            player._audio_callback(outdata, 4, None, None)
            with pytest.raises(sd.CallbackStop):
                player._audio_callback(outdata, 4, None, None)

            assert outdata[0, 0] == pytest.approx(1 / 32767.0)
            assert outdata[2, 0] == 0.0

    def test_finished_reports_completion(self, config):
        """Test natural completion calls on_finished without an error."""
        with patch(STREAM) as mock_stream_class:
            on_finished = Mock()
            player = SpeakerPlayer(config)
            player.play(b"\x01\x00", on_finished)

            mock_stream_class.call_args.kwargs["finished_callback"]()

            on_finished.assert_called_once_with(None)

    def test_callback_error_reported_on_finish(self, config):
        """Test a callback failure stops playback and is reported."""
        with patch(STREAM) as mock_stream_class:
            on_finished = Mock()
            player = SpeakerPlayer(config)
            player.play(b"\x01\x00" * 4, on_finished)
            player._buffer = Mock()
            player._buffer.buffer_size.side_effect = RuntimeError("device lost")
            outdata = np.zeros((4, 1), dtype=np.float32)

            with pytest.raises(sd.CallbackStop):
                player._audio_callback(outdata, 4, None, None)
            mock_stream_class.call_args.kwargs["finished_callback"]()

            error = on_finished.call_args[0][0]
            assert str(error) == "device lost"

    def test_manual_stop_not_reported(self, config):
        """Test stop() suppresses the completion callback."""
        with patch(STREAM) as mock_stream_class:
            on_finished = Mock()
            player = SpeakerPlayer(config)
            player.play(b"\x01\x00", on_finished)
            finished_callback = mock_stream_class.call_args.kwargs["finished_callback"]

            player.stop()
            finished_callback()

            on_finished.assert_not_called()
            mock_stream_class.return_value.close.assert_called_once()

    def test_play_replaces_previous(self, config):
        """Test a new play() closes the previous stream first."""
        with patch(STREAM) as mock_stream_class:
            player = SpeakerPlayer(config)
            player.play(b"\x01\x00", Mock())
            player.play(b"\x02\x00", Mock())

            assert mock_stream_class.call_count == 2
            mock_stream_class.return_value.close.assert_called_once()


class TestOutputMetrics:
    """Test metrics defaults."""

    def test_defaults(self):
        """Test a fresh metrics object."""
        metrics = OutputMetrics()

        assert metrics.blocks_played == 0
        assert metrics.underruns == 0
        assert metrics.errors == 0
        assert metrics.last_error is None
