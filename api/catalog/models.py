from django.db import models
from django.utils import timezone


class MovieType(models.TextChoices):
    SERIES = 'series', 'Series'
    SINGLE = 'single', 'Single'


class EpisodeType(models.TextChoices):
    DIRECT = 'direct', 'Direct stream'
    EMBED = 'embed', 'Embedded player'


class NamedEntity(models.Model):
    name = models.CharField(max_length=255, unique=True)
    created_at = models.DateTimeField(null=False, auto_now_add=True)

    class Meta:
        abstract = True

    def __str__(self):
        return self.name


class Actor(models.Model):
    name = models.CharField(max_length=255)
    # lookup key, see ReconciliationEngine.normalize_actor_name
    name_normalized = models.CharField(max_length=255, unique=True)
    slug = models.SlugField(max_length=300, unique=True)
    created_at = models.DateTimeField(null=False, auto_now_add=True)

    class Meta:
        db_table = 'actors'

    def __str__(self):
        return self.name


class Director(NamedEntity):
    class Meta:
        db_table = 'directors'


class Category(NamedEntity):
    class Meta:
        db_table = 'categories'


class Region(NamedEntity):
    class Meta:
        db_table = 'regions'


class Tag(NamedEntity):
    class Meta:
        db_table = 'tags'


class Studio(NamedEntity):
    class Meta:
        db_table = 'studios'


class Movie(models.Model):
    name = models.CharField(max_length=500, db_index=True)
    origin_name = models.CharField(max_length=500, blank=True, default='')
    slug = models.CharField(max_length=500, db_index=True)
    publish_year = models.IntegerField(null=True, blank=True, db_index=True)
    content = models.TextField(blank=True, default='')
    type = models.CharField(
        max_length=10,
        choices=MovieType.choices,
        default=MovieType.SINGLE,
        db_index=True
    )
    status = models.CharField(max_length=50, blank=True, default='')
    thumb_url = models.CharField(max_length=2048, blank=True, default='')
    poster_url = models.CharField(max_length=2048, blank=True, default='')
    is_copyright = models.BooleanField(default=False)
    trailer_url = models.CharField(max_length=2048, blank=True, default='')
    quality = models.CharField(max_length=50, blank=True, default='')
    language = models.CharField(max_length=100, blank=True, default='')
    episode_time = models.CharField(max_length=100, blank=True, default='')
    episode_current = models.CharField(max_length=100, blank=True, default='')
    episode_total = models.CharField(max_length=100, blank=True, default='')
    notify = models.TextField(blank=True, default='')
    showtimes = models.TextField(blank=True, default='')
    is_shown_in_theater = models.BooleanField(default=False)

    actors = models.ManyToManyField(Actor, related_name='movies', db_table='movie_actor')
    directors = models.ManyToManyField(Director, related_name='movies', db_table='movie_director')
    categories = models.ManyToManyField(Category, related_name='movies', db_table='movie_category')
    regions = models.ManyToManyField(Region, related_name='movies', db_table='movie_region')
    tags = models.ManyToManyField(Tag, related_name='movies', db_table='movie_tag')
    studios = models.ManyToManyField(Studio, related_name='movies', db_table='movie_studio')

    update_handler = models.CharField(max_length=255)
    update_identity = models.CharField(max_length=255)
    update_checksum = models.CharField(max_length=64, blank=True, default='')
    created_at = models.DateTimeField(default=timezone.now)
    updated_at = models.DateTimeField(default=timezone.now)

    class Meta:
        db_table = 'movies'
        indexes = [
            models.Index(fields=['publish_year', 'type']),
        ]
        constraints = [
            models.UniqueConstraint(
                fields=['update_handler', 'update_identity'],
                name='unique_update_source'
            )
        ]

    def __str__(self):
        return f"{self.name} ({self.publish_year})"


class Episode(models.Model):
    movie = models.ForeignKey(Movie, on_delete=models.CASCADE, related_name='episodes', db_column='movie_id')
    position = models.PositiveIntegerField(default=0)
    server = models.CharField(max_length=255)
    name = models.CharField(max_length=255)
    slug = models.CharField(max_length=300)
    type = models.CharField(max_length=10, choices=EpisodeType.choices)
    link = models.CharField(max_length=2048)

    class Meta:
        db_table = 'episodes'
        ordering = ['position', 'id']
        indexes = [
            models.Index(fields=['movie', 'position']),
        ]

    def __str__(self):
        return f"{self.server}: {self.name} ({self.type})"
