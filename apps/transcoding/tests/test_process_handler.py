import shutil
import unittest
from unittest.mock import patch

from django.test import TestCase

from apps.transcoding.process_handler import EncoderProcessHandler, ErrorMatched, Exited, Output

LOG_SETTINGS = {'error_log_window': 30, 'error_log_max_per_window': 5}


@unittest.skipUnless(shutil.which('sh'), "needs a POSIX shell")
@patch('apps.transcoding.process_handler.get_transcoding_setting', side_effect=LOG_SETTINGS.get)
class EncoderProcessHandlerTests(TestCase):
    def _run(self, script):
        events = []
        handler = EncoderProcessHandler(1, 1, ['sh', '-c', script], lambda _handler, event: events.append(event))
        handler.start()
        handler._loop_thread.join(timeout=10)
        self.assertFalse(handler._loop_thread.is_alive())
        return events

    def test_undecodable_bytes_do_not_stop_the_reader(self, _settings):
        """Garbage bytes on stderr are replaced and later error lines are still classified."""
        events = self._run(
            "printf '\\377\\376\\n' >&2; "
            "echo 'Invalid data found when processing input' >&2; "
            "exit 1"
        )

        matched = [event for event in events if isinstance(event, ErrorMatched)]
        self.assertEqual([event.category for event in matched], ['INVALID_DATA'])
        self.assertEqual(events[-1], Exited(1))

    def test_output_lines_then_exit(self, _settings):
        events = self._run("echo 'frame=  10 fps=25'; echo 'speed=1.0x' >&2")

        self.assertIn(Output('frame=  10 fps=25', 'stdout'), events)
        self.assertIn(Output('speed=1.0x', 'stderr'), events)
        self.assertFalse(any(isinstance(event, ErrorMatched) for event in events))
        self.assertEqual(events[-1], Exited(0))

    def test_long_stderr_stream_is_fully_drained(self, _settings):
        """The encoder is never cut off by a closed pipe while it still writes."""
        events = self._run(
            "i=0; while [ $i -lt 500 ]; do printf 'chunk %d \\377\\n' $i >&2; i=$((i+1)); done; exit 3"
        )

        stderr_lines = [event for event in events if isinstance(event, Output) and event.stream == 'stderr']
        self.assertEqual(len(stderr_lines), 500)
        self.assertEqual(events[-1], Exited(3))
