from vodhub.models import CanonicalVideo
from vodhub.pipeline.scoring import (
    MAX_SCORE,
    PLAYBACK_POINTS,
    is_low_quality,
    score,
    score_fields,
)


def test_empty_record_scores_zero():
    assert score_fields() == 0


def test_complete_record_reaches_max_score():
    value = score_fields(
        cover="https://img.example.com/a.jpg",
        cast=["张三"],
        director=["李四"],
        synopsis="x" * 600,
        routes={"cms1-r1": "http://a"},
    )

    assert value == MAX_SCORE == 110


def test_synopsis_threshold_and_bonus():
    assert score_fields(synopsis="x" * 20) == 0
    assert score_fields(synopsis="x" * 21) == 25
    assert score_fields(synopsis="x" * 149) == 25 + 2
    assert score_fields(synopsis="x" * 5000) == 25 + 10


def test_short_cover_earns_nothing():
    assert score_fields(cover="http://a/") == 0
    assert score_fields(cover="http://a/b.jpg") == 20


def test_routes_only_count_on_valid_records():
    routes = {"cms1-r1": "http://a"}

    assert score_fields(routes=routes) == PLAYBACK_POINTS
    assert score_fields(routes=routes, is_valid=False) == 0
    assert score_fields(routes={}) == 0


def test_score_reads_canonical_video_columns():
    video = CanonicalVideo(
        cover="",
        cast=["张三"],
        director=[],
        synopsis="",
        play_routes={"cms1-r1": "http://a"},
        is_valid=True,
    )

    assert score(video) == 15 + 30

    video.is_valid = False
    assert score(video) == 15


def test_low_quality_threshold():
    assert is_low_quality(39, 40)
    assert not is_low_quality(40, 40)
