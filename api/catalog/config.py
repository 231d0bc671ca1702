from dataclasses import dataclass, field
from typing import Optional, Tuple

from django.conf import settings as django_settings

MOVIE_FIELDS = (
    "name", "origin_name", "slug", "publish_year", "content", "type", "status",
    "thumb_url", "poster_url", "is_copyright", "trailer_url", "quality", "language",
    "episode_time", "episode_current", "episode_total", "notify", "showtimes",
    "is_shown_in_theater",
)
ASSOCIATION_FIELDS = ("actors", "directors", "categories", "regions", "tags", "studios", "episodes")
ALL_FIELDS = MOVIE_FIELDS + ASSOCIATION_FIELDS


@dataclass(frozen=True)
class ResizePolicy:
    width: Optional[int] = None
    height: Optional[int] = None

    @property
    def is_active(self) -> bool:
        return bool(self.width or self.height)


@dataclass(frozen=True)
class CrawlerOptions:
    download_image: bool = False
    should_resize_thumb: bool = False
    resize_thumb_width: Optional[int] = None
    resize_thumb_height: Optional[int] = None
    should_resize_poster: bool = False
    resize_poster_width: Optional[int] = None
    resize_poster_height: Optional[int] = None
    convert_to_webp: bool = False
    excluded_types: frozenset = field(default_factory=frozenset)
    excluded_categories: frozenset = field(default_factory=frozenset)
    excluded_regions: frozenset = field(default_factory=frozenset)
    image_timeout: int = 30
    alternate_timeout: int = 10
    user_agent: str = (
        "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 "
        "(KHTML, like Gecko) Chrome/111.0.0.0 Safari/537.36"
    )
    fields: Tuple[str, ...] = ALL_FIELDS

    @classmethod
    def from_settings(cls, settings=None) -> "CrawlerOptions":
        """Build options from the CRAWLER_* Django settings."""
        settings = settings or django_settings
        defaults = cls()

        def get(name, default):
            return getattr(settings, f"CRAWLER_{name.upper()}", default)

        return cls(
            download_image=bool(get("download_image", False)),
            should_resize_thumb=bool(get("should_resize_thumb", False)),
            resize_thumb_width=get("resize_thumb_width", None),
            resize_thumb_height=get("resize_thumb_height", None),
            should_resize_poster=bool(get("should_resize_poster", False)),
            resize_poster_width=get("resize_poster_width", None),
            resize_poster_height=get("resize_poster_height", None),
            convert_to_webp=bool(get("convert_to_webp", False)),
            excluded_types=frozenset(get("excluded_types", ())),
            excluded_categories=frozenset(get("excluded_categories", ())),
            excluded_regions=frozenset(get("excluded_regions", ())),
            image_timeout=get("image_timeout", defaults.image_timeout) or defaults.image_timeout,
            alternate_timeout=get("alternate_timeout", defaults.alternate_timeout) or defaults.alternate_timeout,
            user_agent=get("user_agent", defaults.user_agent) or defaults.user_agent,
            fields=tuple(get("fields", ())) or ALL_FIELDS,
        )

    def resize_for(self, role) -> Optional[ResizePolicy]:
        """Resize policy of an image role ("thumb" or "poster"), None when disabled."""
        role = getattr(role, "value", role)
        if role == "thumb" and self.should_resize_thumb:
            policy = ResizePolicy(self.resize_thumb_width, self.resize_thumb_height)
        elif role == "poster" and self.should_resize_poster:
            policy = ResizePolicy(self.resize_poster_width, self.resize_poster_height)
        else:
            return None
        return policy if policy.is_active else None
