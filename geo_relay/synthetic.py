from __future__ import annotations

import random
import re

from .records import LAT_MAX, LAT_MIN, LON_MAX, LON_MIN, TweetRecord, utc_now_iso

DEFAULT_TRENDING_PROBABILITY = 0.2

_RNG = random.Random()

HASHTAG_PATTERN = re.compile(r"#(\w+)")

SAMPLE_TEXTS = (
    "Just posted a new blog about JavaScript performance optimization! #JavaScript #WebDev",
    "Loving the new features in the latest React update! #ReactJS #Frontend",
    "Working on a cool new project with Node.js and WebSockets! #NodeJS #RealTime",
    "Machine learning is fascinating! Just completed my first TensorFlow model. #ML #AI",
    "Docker containers make deployment so much easier! #DevOps #Docker",
    "Just pushed my latest project to GitHub! Check it out! #OpenSource #Coding",
    "Learning TypeScript today. Types are actually pretty nice! #TypeScript #JavaScript",
    "Cloud computing has revolutionized how we build applications! #AWS #Cloud",
    "Debugging this CSS issue for hours... #WebDev #CSSProblems",
    "Just deployed my first serverless function! #Serverless #CloudComputing",
)

SAMPLE_HANDLES = (
    "@devguru",
    "@codemaster",
    "@techexplorer",
    "@webwizard",
    "@datascientist",
    "@cloudarchitect",
    "@uxdesigner",
    "@mobiledeveloper",
    "@securityexpert",
    "@airesearcher",
)

SAMPLE_PLACES = (
    "New York, NY",
    "San Francisco, CA",
    "London, UK",
    "Tokyo, Japan",
    "Sydney, Australia",
    "Berlin, Germany",
    "Paris, France",
    "Toronto, Canada",
    "Mumbai, India",
    "Rio de Janeiro, Brazil",
)

SAMPLE_COUNTRIES = (
    "United States",
    "United Kingdom",
    "Japan",
    "Australia",
    "Germany",
    "France",
    "Canada",
    "India",
    "Brazil",
    "South Korea",
)


def extract_hashtags(text: str) -> list[str]:
    return HASHTAG_PATTERN.findall(text)


def generate_record(
    rng: random.Random | None = None,
    *,
    trending_probability: float = DEFAULT_TRENDING_PROBABILITY,
) -> TweetRecord:
    # Place and country are drawn independently of each other and of lat/lon.
    rng = rng if rng is not None else _RNG
    lat = rng.uniform(LAT_MIN, LAT_MAX)
    lon = rng.uniform(LON_MIN, LON_MAX)
    text = rng.choice(SAMPLE_TEXTS)
    handle = rng.choice(SAMPLE_HANDLES)
    hashtags = extract_hashtags(text)
    trending = rng.random() < trending_probability or len(hashtags) > 0
    return TweetRecord(
        latitude=lat,
        longitude=lon,
        text=text,
        author_handle=handle,
        is_trending=trending,
        hashtags=hashtags,
        place_name=rng.choice(SAMPLE_PLACES),
        country_name=rng.choice(SAMPLE_COUNTRIES),
        timestamp=utc_now_iso(),
    )
