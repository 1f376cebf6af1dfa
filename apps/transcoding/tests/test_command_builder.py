from django.test import TestCase, override_settings

from apps.channels.models import TranscodingProfile
from apps.transcoding.command_builder import (
    RETRY_INPUT_OPTIONS,
    build_encoder_command,
    double_bitrate,
    ensure_mandatory_hls_flags,
    get_output_dir,
    get_output_url,
    scale_filter_for,
)
from apps.transcoding.config import invalidate_settings_cache

TEST_TRANSCODING = {
    'hls_output_base': '/srv/hls',
    'hls_base_url': 'http://tv.example.com/',
    'ffmpeg_path': '/usr/bin/ffmpeg',
}


def _value_after(command, flag):
    return command[command.index(flag) + 1]


@override_settings(TRANSCODING=TEST_TRANSCODING)
class EncoderCommandTests(TestCase):
    def setUp(self):
        invalidate_settings_cache()
        self.profile = TranscodingProfile(
            name="HD",
            video_codec="libx264",
            video_bitrate="3000k",
            resolution="720p",
            preset="veryfast",
            tune="zerolatency",
            gop_size=48,
            keyint_min=48,
            audio_codec="aac",
            audio_bitrate="128k",
            hls_time=4,
            hls_list_size=3,
            manifest_filename="index.m3u8",
            hls_segment_filename="seg_%d.ts",
        )

    def test_output_paths(self):
        """Output directory and URL are derived from the channel id."""
        self.assertEqual(get_output_dir(7), '/srv/hls/channel_7')
        self.assertEqual(get_output_url(7, 'index.m3u8'), 'http://tv.example.com/hls_stream/channel_7/index.m3u8')

    def test_transcode_command_layout(self):
        """A transcoding profile produces rate control, scaling and HLS options in order."""
        cmd = build_encoder_command(self.profile, 'http://src/live.m3u8', '/srv/hls/channel_7')

        self.assertEqual(cmd[:4], ['/usr/bin/ffmpeg', '-hide_banner', '-loglevel', 'error'])
        self.assertEqual(_value_after(cmd, '-i'), 'http://src/live.m3u8')
        self.assertEqual(_value_after(cmd, '-c:v'), 'libx264')
        self.assertEqual(_value_after(cmd, '-preset'), 'veryfast')
        self.assertEqual(_value_after(cmd, '-tune'), 'zerolatency')
        self.assertEqual(_value_after(cmd, '-b:v'), '3000k')
        self.assertEqual(_value_after(cmd, '-maxrate'), '3000k')
        self.assertEqual(_value_after(cmd, '-bufsize'), '6000k')
        self.assertEqual(_value_after(cmd, '-sc_threshold'), '0')
        self.assertEqual(_value_after(cmd, '-vf'), 'scale=1280:720')
        self.assertEqual(_value_after(cmd, '-b:a'), '128k')
        self.assertEqual(_value_after(cmd, '-hls_segment_filename'), '/srv/hls/channel_7/seg_%d.ts')
        self.assertEqual(_value_after(cmd, '-hls_start_number_source'), 'epoch')
        self.assertEqual(cmd[-1], '/srv/hls/channel_7/index.m3u8')
        self.assertLess(cmd.index('-i'), cmd.index('-c:v'))
        self.assertLess(cmd.index('-c:a'), cmd.index('-f'))

    def test_playlist_size_has_floor(self):
        """A playlist smaller than six segments is raised to six."""
        cmd = build_encoder_command(self.profile, 'http://src', '/out')
        self.assertEqual(_value_after(cmd, '-hls_list_size'), '6')

    def test_mandatory_flags_inserted_before_hls_time(self):
        """Without profile flags, the cleanup flags are inserted before -hls_time."""
        cmd = build_encoder_command(self.profile, 'http://src', '/out')
        self.assertEqual(cmd.index('-hls_flags') + 2, cmd.index('-hls_time'))
        self.assertEqual(
            _value_after(cmd, '-hls_flags'),
            'delete_segments+program_date_time+independent_segments+split_by_time',
        )

    def test_profile_flags_are_merged(self):
        """Profile flags are kept and the missing mandatory ones appended."""
        self.profile.hls_flags = 'append_list+delete_segments'
        cmd = build_encoder_command(self.profile, 'http://src', '/out')
        self.assertEqual(cmd.count('-hls_flags'), 1)
        self.assertEqual(
            _value_after(cmd, '-hls_flags'),
            'append_list+delete_segments+program_date_time+independent_segments+split_by_time',
        )

    def test_copy_profile_skips_encoder_options(self):
        """Pass-through profiles carry no preset, bitrate or scaling options."""
        self.profile.video_codec = 'copy'
        self.profile.audio_codec = 'copy'
        cmd = build_encoder_command(self.profile, 'http://src', '/out')
        for flag in ('-preset', '-tune', '-b:v', '-maxrate', '-bufsize', '-g', '-vf', '-b:a'):
            self.assertNotIn(flag, cmd)
        self.assertEqual(_value_after(cmd, '-c:v'), 'copy')

    def test_retry_adds_reconnect_options_before_input(self):
        """Retry jobs get reconnect and timeout options ahead of -i."""
        cmd = build_encoder_command(self.profile, 'http://src', '/out', is_retry=True)
        start = cmd.index('-reconnect')
        self.assertEqual(cmd[start:start + len(RETRY_INPUT_OPTIONS)], RETRY_INPUT_OPTIONS)
        self.assertLess(start, cmd.index('-i'))

    def test_additional_params_before_output(self):
        """Extra arguments are shell-split and placed before the manifest path."""
        self.profile.additional_params = '-metadata title="My Channel" -threads 2'
        cmd = build_encoder_command(self.profile, 'http://src', '/out')
        self.assertEqual(cmd[-5:-1], ['-metadata', 'title=My Channel', '-threads', '2'])
        self.assertEqual(cmd[-1], '/out/index.m3u8')

    def test_original_bitrate_is_left_alone(self):
        self.profile.video_bitrate = 'original'
        cmd = build_encoder_command(self.profile, 'http://src', '/out')
        self.assertNotIn('-b:v', cmd)


class CommandHelperTests(TestCase):
    def test_double_bitrate(self):
        self.assertEqual(double_bitrate('2000k'), '4000k')
        self.assertEqual(double_bitrate('1.5M'), '3M')
        self.assertEqual(double_bitrate('weird'), 'weird')

    def test_scale_filter(self):
        self.assertIsNone(scale_filter_for('original'))
        self.assertEqual(scale_filter_for('1080p'), 'scale=1920:1080')
        self.assertEqual(scale_filter_for('640x360'), 'scale=640:360')

    def test_ensure_flags_adds_delete_threshold(self):
        """A bare command gets the flags and delete threshold before its output."""
        cmd = ensure_mandatory_hls_flags(['ffmpeg', '-i', 'x', '-f', 'hls', 'out.m3u8'])
        self.assertEqual(cmd[-1], 'out.m3u8')
        self.assertIn('-hls_flags', cmd)
        self.assertEqual(_value_after(cmd, '-hls_delete_threshold'), '1')
