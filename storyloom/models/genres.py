"""Story genres the narrative engine supports."""

# key -> display name
GENRES = {
    "fantasy": "Fantasy",
    "sci-fi": "Science Fiction",
    "mystery": "Mystery",
    "adventure": "Adventure",
    "romance": "Romance",
    "historical": "Historical Fiction",
    "thriller": "Thriller",
    "comedy": "Comedy",
    "educational": "Educational",
    "sports": "Sports",
}


def normalize_genre(genre: str) -> str:
    """
    Resolve a genre key or display name (any case) to its key.

    Raises:
        ValueError: if the genre is not supported
    """
    candidate = (genre or "").strip().lower()
    if candidate in GENRES:
        return candidate
    for key, display in GENRES.items():
        if display.lower() == candidate:
            return key
    raise ValueError(
        f"Unsupported genre '{genre}'. Choose one of: {', '.join(GENRES)}"
    )
