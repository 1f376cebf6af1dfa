from django.test import TestCase

from apps.channels.models import Channel, TranscodingProfile


class TranscodingProfileTests(TestCase):
    def test_tier_assigned_on_create(self):
        """Profiles without an explicit tier are classified from codec and resolution."""
        hd = TranscodingProfile.objects.create(name="HD", video_codec="libx264", resolution="1080p")
        sd = TranscodingProfile.objects.create(name="SD", video_codec="libx264", resolution="1280x720")
        passthrough = TranscodingProfile.objects.create(name="Copy", video_codec="copy", resolution="1080p")

        self.assertEqual(hd.quality_tier, "high")
        self.assertEqual(sd.quality_tier, "medium")
        self.assertEqual(passthrough.quality_tier, "copy")
        self.assertTrue(passthrough.is_copy)

    def test_explicit_tier_is_kept(self):
        profile = TranscodingProfile.objects.create(name="Pinned", resolution="1080p", quality_tier="low")
        self.assertEqual(profile.quality_tier, "low")

    def test_single_default(self):
        """Saving a default profile clears the flag on every other profile."""
        first = TranscodingProfile.objects.create(name="First", is_default=True)
        second = TranscodingProfile.objects.create(name="Second", is_default=True)

        first.refresh_from_db()
        self.assertFalse(first.is_default)
        self.assertEqual(TranscodingProfile.get_default(), second)

    def test_no_default(self):
        TranscodingProfile.objects.create(name="Plain")
        self.assertIsNone(TranscodingProfile.get_default())


class ChannelTests(TestCase):
    def test_new_channel_is_idle(self):
        channel = Channel.objects.create(name="News", url="http://example.com/news.m3u8")
        self.assertEqual(channel.transcoding_status, Channel.TranscodingStatus.INACTIVE)
        self.assertEqual(channel.last_transcoding_state, Channel.TranscodingStatus.INACTIVE)
        self.assertFalse(channel.transcoding_enabled)
        self.assertEqual(channel.stream_health_status, "unknown")

    def test_profile_delete_leaves_channel(self):
        profile = TranscodingProfile.objects.create(name="Temp")
        channel = Channel.objects.create(name="Movies", url="http://example.com/movies.m3u8", profile=profile)

        profile.delete()

        channel.refresh_from_db()
        self.assertIsNone(channel.profile)
