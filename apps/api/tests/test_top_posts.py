from datetime import datetime, timezone

from services.top_posts import RankablePost, dedupe_posts, post_engagements, post_visibility, select_top_posts


def _post(post_id, metrics, platform="instagram", media_type="image", created_at=None, fallback_id=None):
    return RankablePost(
        platform=platform,
        external_post_id=post_id,
        fallback_id=fallback_id or f"row-{post_id}",
        media_type=media_type,
        metrics=metrics,
        created_at=created_at,
    )


def test_reels_rank_by_views_when_present():
    assert post_visibility({"views": 900, "impressions": 400}, "reel") == ("views", 900)
    assert post_visibility({"plays": 300, "impressions": 100}, "REELS") == ("views", 300)
    assert post_visibility({"views": 0, "impressions": 100}, "reel") == ("impressions", 100)


def test_plain_videos_rank_by_impressions_before_views():
    assert post_visibility({"impressions": 1000, "views": 300}, "video") == ("impressions", 1000)
    assert post_visibility({"views": 300}, "video") == ("views", 300)

    posts = [
        _post("a", {"impressions": 1000, "views": 300}, platform="facebook", media_type="video"),
        _post("b", {"impressions": 500}, platform="facebook"),
    ]
    assert [post.external_post_id for post in select_top_posts(posts, limit=2)] == ["a", "b"]


def test_non_video_posts_prefer_impressions_then_views_then_reach():
    assert post_visibility({"views": 900, "impressions": 400}, "image") == ("impressions", 400)
    assert post_visibility({"views": 900}, "image") == ("views", 900)
    assert post_visibility({"reach": 70}, "carousel") == ("reach", 70)
    assert post_visibility({}, None) == ("reach", 0)


def test_visibility_accepts_serialized_metrics():
    assert post_visibility('{"impressions": 12}', "image") == ("impressions", 12)
    assert post_visibility("not json", "image") == ("impressions", 0)


def test_engagements_fall_back_to_interaction_sum():
    assert post_engagements({"engagements": 42, "likes": 1}) == 42
    assert post_engagements({"likes": 10, "comments": 3, "shares": 2, "saves": 1}) == 16
    assert post_engagements(None) == 0


def test_dedupe_keeps_most_complete_record_per_platform_and_id():
    sparse = _post("p1", {"impressions": 10})
    complete = _post("p1", {"impressions": 500, "likes": 20})
    other_platform = _post("p1", {"impressions": 5}, platform="facebook")

    unique = dedupe_posts([sparse, complete, other_platform])

    assert len(unique) == 2
    by_key = {post.key: post for post in unique}
    assert by_key["instagram:p1"] is complete
    assert by_key["facebook:p1"] is other_platform


def test_dedupe_uses_fallback_id_when_external_id_is_missing():
    first = _post(None, {"impressions": 1}, fallback_id="row-a")
    second = _post(None, {"impressions": 2}, fallback_id="row-b")
    assert len(dedupe_posts([first, second])) == 2


def test_ranking_orders_by_visibility_then_engagements_then_key():
    posts = [
        _post("a", {"impressions": 100, "likes": 1}),
        _post("b", {"impressions": 300}),
        _post("c", {"impressions": 100, "likes": 9}),
        _post("d", {"impressions": 100, "likes": 9}),
    ]

    ranked = select_top_posts(posts, limit=10)

    assert [post.external_post_id for post in ranked] == ["b", "c", "d", "a"]


def test_ranking_is_deterministic_regardless_of_input_order():
    posts = [_post(str(index), {"impressions": 50}) for index in range(5)]
    forward = [post.key for post in select_top_posts(posts, limit=3)]
    backward = [post.key for post in select_top_posts(list(reversed(posts)), limit=3)]
    assert forward == backward == ["instagram:0", "instagram:1", "instagram:2"]


def test_posts_without_metrics_are_hidden_when_others_have_metrics():
    posts = [
        _post("empty", {}),
        _post("seen", {"reach": 3}),
    ]
    ranked = select_top_posts(posts, limit=5)
    assert [post.external_post_id for post in ranked] == ["seen"]


def test_posts_without_metrics_are_shown_when_nothing_has_metrics():
    created = datetime(2026, 10, 1, tzinfo=timezone.utc)
    posts = [_post("b", {}, created_at=created), _post("a", {}, created_at=created)]
    ranked = select_top_posts(posts, limit=5)
    assert [post.external_post_id for post in ranked] == ["a", "b"]


def test_limit_is_applied_after_dedupe():
    posts = [_post("x", {"impressions": 5}), _post("x", {"impressions": 9}), _post("y", {"impressions": 1})]
    ranked = select_top_posts(posts, limit=1)
    assert len(ranked) == 1
    assert ranked[0].visibility == 9
    assert select_top_posts(posts, limit=0) == []


def test_formatted_metric_strings_are_counted():
    assert post_visibility({"impressions": "1,234"}, "image") == ("impressions", 1234)
    assert post_engagements({"likes": "12/40", "comments": "nan"}) == 40
