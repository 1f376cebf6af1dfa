import django.db.models.deletion
from django.db import migrations, models


STATUS_CHOICES = [
    ('inactive', 'Inactive'),
    ('starting', 'Starting'),
    ('active', 'Active'),
    ('stopping', 'Stopping'),
    ('failed', 'Failed'),
    ('offline_temporary', 'Offline (temporary)'),
    ('offline_permanent', 'Offline (permanent)'),
]


class Migration(migrations.Migration):

    initial = True

    dependencies = []

    operations = [
        migrations.CreateModel(
            name='TranscodingProfile',
            fields=[
                ('id', models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name='ID')),
                ('name', models.CharField(max_length=255, unique=True)),
                ('description', models.TextField(blank=True)),
                ('video_codec', models.CharField(default='libx264', max_length=50)),
                ('video_bitrate', models.CharField(default='2000k', help_text="Target video bitrate, e.g. 2000k, or 'original' to leave unset", max_length=20)),
                ('resolution', models.CharField(default='original', help_text='original, 1080p, 720p, 480p or WIDTHxHEIGHT', max_length=20)),
                ('preset', models.CharField(default='veryfast', max_length=20)),
                ('tune', models.CharField(blank=True, max_length=20)),
                ('gop_size', models.IntegerField(default=50)),
                ('keyint_min', models.IntegerField(default=50)),
                ('audio_codec', models.CharField(default='aac', max_length=50)),
                ('audio_bitrate', models.CharField(default='128k', max_length=20)),
                ('hls_time', models.IntegerField(default=4, help_text='Target segment duration in seconds')),
                ('hls_list_size', models.IntegerField(default=6, help_text='Number of segments in the live playlist')),
                ('hls_flags', models.CharField(blank=True, max_length=255)),
                ('manifest_filename', models.CharField(default='output.m3u8', max_length=100)),
                ('hls_segment_filename', models.CharField(default='output_%d.ts', max_length=100)),
                ('additional_params', models.TextField(blank=True, help_text='Extra encoder arguments inserted before the output path')),
                ('quality_tier', models.CharField(blank=True, choices=[('high', 'High quality'), ('medium', 'Medium quality (<=720p)'), ('low', 'Low quality (<=480p)'), ('copy', 'Pass-through copy')], help_text='Concurrency tier; assigned from codec/resolution when the profile is created', max_length=10)),
                ('is_default', models.BooleanField(default=False)),
                ('created_at', models.DateTimeField(auto_now_add=True)),
                ('updated_at', models.DateTimeField(auto_now=True)),
            ],
            options={
                'verbose_name': 'Transcoding Profile',
                'verbose_name_plural': 'Transcoding Profiles',
                'db_table': 'transcoding_profiles',
                'ordering': ['name'],
            },
        ),
        migrations.CreateModel(
            name='Channel',
            fields=[
                ('id', models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name='ID')),
                ('name', models.CharField(max_length=255)),
                ('url', models.CharField(help_text='Source stream URL', max_length=2048)),
                ('transcoding_enabled', models.BooleanField(default=False)),
                ('profile', models.ForeignKey(blank=True, null=True, on_delete=django.db.models.deletion.SET_NULL, related_name='channels', to='channels.transcodingprofile')),
                ('transcoding_status', models.CharField(choices=STATUS_CHOICES, db_index=True, default='inactive', max_length=20)),
                ('transcoded_url', models.CharField(blank=True, max_length=2048, null=True)),
                ('last_transcoding_state', models.CharField(choices=STATUS_CHOICES, default='inactive', help_text='Last stable state, used to resume channels after a restart', max_length=20)),
                ('offline_reason', models.TextField(blank=True, null=True)),
                ('dead_source_count', models.IntegerField(default=0)),
                ('last_dead_source_event', models.DateTimeField(blank=True, null=True)),
                ('stream_health_status', models.CharField(default='unknown', max_length=20)),
                ('last_health_check', models.DateTimeField(blank=True, null=True)),
                ('avg_response_time', models.IntegerField(default=0, help_text='Milliseconds')),
                ('uptime_percentage', models.FloatField(default=0.0)),
                ('created_at', models.DateTimeField(auto_now_add=True)),
                ('updated_at', models.DateTimeField(auto_now=True)),
            ],
            options={
                'db_table': 'channels',
                'ordering': ['id'],
            },
        ),
    ]
