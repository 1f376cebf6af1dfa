import django.db.models.deletion
from django.db import migrations, models


class Migration(migrations.Migration):

    initial = True

    dependencies = [
        ('channels', '0001_initial'),
    ]

    operations = [
        migrations.CreateModel(
            name='TranscodingJob',
            fields=[
                ('id', models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name='ID')),
                ('status', models.CharField(choices=[('starting', 'Starting'), ('running', 'Running'), ('completed', 'Completed'), ('failed', 'Failed'), ('stopped', 'Stopped')], default='starting', max_length=20)),
                ('ffmpeg_pid', models.IntegerField(blank=True, null=True)),
                ('output_path', models.CharField(max_length=1024)),
                ('ffmpeg_command', models.TextField(blank=True)),
                ('error_message', models.TextField(blank=True, null=True)),
                ('error_count', models.IntegerField(default=0)),
                ('is_retry', models.BooleanField(default=False, help_text='Started with reconnect/timeout robustness flags')),
                ('created_at', models.DateTimeField(auto_now_add=True)),
                ('updated_at', models.DateTimeField(auto_now=True)),
                ('channel', models.ForeignKey(on_delete=django.db.models.deletion.CASCADE, related_name='transcoding_jobs', to='channels.channel')),
                ('profile', models.ForeignKey(blank=True, null=True, on_delete=django.db.models.deletion.SET_NULL, related_name='jobs', to='channels.transcodingprofile')),
            ],
            options={
                'db_table': 'transcoding_jobs',
                'ordering': ['-created_at'],
                'indexes': [
                    models.Index(fields=['channel', 'status'], name='transcoding_channel_0a1b2c_idx'),
                    models.Index(fields=['status', 'created_at'], name='transcoding_status_3d4e5f_idx'),
                ],
            },
        ),
        migrations.CreateModel(
            name='DeadSourceEvent',
            fields=[
                ('id', models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name='ID')),
                ('error_count', models.IntegerField(default=0)),
                ('error_patterns', models.TextField(blank=True)),
                ('profile_level', models.IntegerField(default=4)),
                ('cooldown_until', models.DateTimeField()),
                ('retry_count', models.IntegerField(default=0)),
                ('resolved_at', models.DateTimeField(blank=True, null=True)),
                ('created_at', models.DateTimeField(auto_now_add=True)),
                ('channel', models.ForeignKey(on_delete=django.db.models.deletion.CASCADE, related_name='dead_source_events', to='channels.channel')),
            ],
            options={
                'db_table': 'dead_source_events',
                'ordering': ['-created_at'],
                'indexes': [
                    models.Index(fields=['channel', '-created_at'], name='dead_source_channel_6a7b8c_idx'),
                ],
            },
        ),
        migrations.CreateModel(
            name='ProfileMigration',
            fields=[
                ('id', models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name='ID')),
                ('affected_channels', models.IntegerField(default=0)),
                ('successful_channels', models.IntegerField(default=0)),
                ('failed_channels', models.IntegerField(default=0)),
                ('status', models.CharField(choices=[('running', 'Running'), ('completed', 'Completed'), ('failed', 'Failed')], default='running', max_length=20)),
                ('error_message', models.TextField(blank=True, null=True)),
                ('started_at', models.DateTimeField(auto_now_add=True)),
                ('completed_at', models.DateTimeField(blank=True, null=True)),
                ('to_profile', models.ForeignKey(null=True, on_delete=django.db.models.deletion.SET_NULL, related_name='migrations', to='channels.transcodingprofile')),
            ],
            options={
                'db_table': 'profile_migrations',
                'ordering': ['-started_at'],
            },
        ),
        migrations.CreateModel(
            name='ResourceSnapshot',
            fields=[
                ('id', models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name='ID')),
                ('timestamp', models.DateTimeField(db_index=True)),
                ('cpu_usage', models.FloatField()),
                ('memory_usage', models.FloatField()),
                ('disk_usage', models.FloatField()),
                ('memory_total', models.BigIntegerField(default=0)),
                ('memory_used', models.BigIntegerField(default=0)),
                ('disk_total', models.BigIntegerField(default=0)),
                ('disk_used', models.BigIntegerField(default=0)),
                ('cpu_health', models.CharField(max_length=10)),
                ('memory_health', models.CharField(max_length=10)),
                ('disk_health', models.CharField(max_length=10)),
                ('overall_health', models.CharField(max_length=10)),
            ],
            options={
                'db_table': 'resource_history',
                'ordering': ['timestamp'],
            },
        ),
        migrations.CreateModel(
            name='ResourceAlert',
            fields=[
                ('id', models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name='ID')),
                ('alert_type', models.CharField(db_index=True, max_length=50)),
                ('message', models.TextField()),
                ('value', models.FloatField()),
                ('threshold', models.FloatField()),
                ('created_at', models.DateTimeField(auto_now_add=True, db_index=True)),
            ],
            options={
                'db_table': 'resource_alerts',
                'ordering': ['-created_at'],
            },
        ),
        migrations.CreateModel(
            name='StreamHealthRecord',
            fields=[
                ('id', models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name='ID')),
                ('checked_at', models.DateTimeField(db_index=True)),
                ('availability_status', models.CharField(choices=[('available', 'Available'), ('unavailable', 'Unavailable'), ('timeout', 'Timeout'), ('error', 'Error')], max_length=20)),
                ('response_time_ms', models.IntegerField(blank=True, null=True)),
                ('http_status_code', models.IntegerField(blank=True, null=True)),
                ('error_message', models.TextField(blank=True, null=True)),
                ('detection_method', models.CharField(default='http_head', max_length=20)),
                ('additional_data', models.JSONField(blank=True, default=dict)),
                ('channel', models.ForeignKey(on_delete=django.db.models.deletion.CASCADE, related_name='health_records', to='channels.channel')),
            ],
            options={
                'db_table': 'stream_health_history',
                'ordering': ['-checked_at'],
                'indexes': [
                    models.Index(fields=['channel', '-checked_at'], name='stream_heal_channel_9d0e1f_idx'),
                ],
            },
        ),
        migrations.CreateModel(
            name='ActionLog',
            fields=[
                ('id', models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name='ID')),
                ('action_type', models.CharField(db_index=True, max_length=50)),
                ('description', models.TextField()),
                ('additional_data', models.JSONField(blank=True, null=True)),
                ('created_at', models.DateTimeField(auto_now_add=True, db_index=True)),
                ('channel', models.ForeignKey(blank=True, null=True, on_delete=django.db.models.deletion.SET_NULL, related_name='transcoding_actions', to='channels.channel')),
            ],
            options={
                'db_table': 'transcoding_actions',
                'ordering': ['-created_at'],
            },
        ),
    ]
