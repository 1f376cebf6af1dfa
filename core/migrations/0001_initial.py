from django.db import migrations, models


class Migration(migrations.Migration):

    initial = True

    dependencies = []

    operations = [
        migrations.CreateModel(
            name='CoreSettings',
            fields=[
                ('id', models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name='ID')),
                ('key', models.CharField(max_length=255, unique=True)),
                ('name', models.CharField(max_length=255)),
                ('value', models.JSONField(blank=True, default=dict)),
            ],
            options={
                'verbose_name': 'Core Settings',
                'verbose_name_plural': 'Core Settings',
            },
        ),
    ]
