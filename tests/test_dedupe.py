"""Unit tests for resource deduplication."""

from typing import Optional, Union

from site_snapshot import Resource, ResourceSource, dedupe_resources


def _res(
    url: str,
    path: str,
    content: Optional[Union[bytes, str]] = b"x",
    source: ResourceSource = ResourceSource.STATIC,
) -> Resource:
    return Resource(
        url=url,
        content_type="text/css",
        content=content,
        size=len(content or b""),
        source=source,
        save_path=path,
        save_name=path.rsplit("/", 1)[-1],
        timestamp="2024-01-01T00:00:00Z",
    )


class TestCollapseByUrl:
    """Records sharing a URL collapse to one."""

    def test_later_record_with_content_wins_over_empty(self) -> None:
        out = dedupe_resources(
            [
                _res("https://a.com/s.css", "a.com/s.css", content=None),
                _res("https://a.com/s.css", "a.com/s.css", content="body{}"),
            ]
        )
        assert len(out) == 1
        assert out[0].content == "body{}"

    def test_first_record_kept_when_both_have_content(self) -> None:
        out = dedupe_resources(
            [
                _res("https://a.com/s.css", "a.com/s.css", content="first"),
                _res("https://a.com/s.css", "a.com/s.css", content="second"),
            ]
        )
        assert [r.content for r in out] == ["first"]

    def test_records_without_path_are_dropped(self) -> None:
        out = dedupe_resources([_res("https://a.com/x", "")])
        assert out == []


class TestCollisionRenaming:
    """Distinct URLs resolving to the same path get numbered names."""

    def test_second_style_renamed(self) -> None:
        out = dedupe_resources(
            [
                _res("https://a.com/style.css", "assets/style.css"),
                _res("https://b.com/style.css", "assets/style.css"),
            ]
        )
        by_url = {r.url: r for r in out}
        assert by_url["https://a.com/style.css"].save_path == "assets/style.css"
        assert by_url["https://b.com/style.css"].save_path == "assets/style (1).css"
        assert by_url["https://b.com/style.css"].save_name == "style (1).css"

    def test_counter_follows_group_index(self) -> None:
        out = dedupe_resources(
            [
                _res("https://a.com/x.js", "x.js"),
                _res("https://b.com/x.js", "x.js"),
                _res("https://c.com/x.js", "x.js"),
            ]
        )
        assert sorted(r.save_path for r in out) == ["x (1).js", "x (2).js", "x.js"]

    def test_rename_skips_existing_path(self) -> None:
        out = dedupe_resources(
            [
                _res("https://a.com/s.css", "s.css"),
                _res("https://b.com/s.css", "s.css"),
                _res("https://c.com/s (1).css", "s (1).css"),
            ]
        )
        by_url = {r.url: r.save_path for r in out}
        assert by_url["https://c.com/s (1).css"] == "s (1).css"
        assert by_url["https://b.com/s.css"] == "s (2).css"

    def test_counter_without_extension(self) -> None:
        out = dedupe_resources(
            [
                _res("https://a.com/v1.2/readme", "v1.2/readme"),
                _res("https://b.com/v1.2/readme", "v1.2/readme"),
            ]
        )
        assert sorted(r.save_path for r in out) == ["v1.2/readme", "v1.2/readme (1)"]

    def test_singleton_group_untouched(self) -> None:
        res = _res("https://a.com/only.css", "only.css")
        assert dedupe_resources([res]) == [res]


class TestGuarantees:
    """Uniqueness, ordering and idempotency."""

    def _sample(self):
        return [
            _res("https://a.com/z.css", "z.css"),
            _res("https://b.com/a.css", "a.css"),
            _res("https://c.com/a.css", "a.css"),
            _res("https://c.com/a.css", "a.css", content=None),
            _res("https://d.com/m.png", "img/m.png"),
            _res("https://e.com/m.png", "img/m.png"),
        ]

    def test_unique_paths(self) -> None:
        out = dedupe_resources(self._sample())
        assert len(out) == len({r.save_path for r in out})

    def test_output_sorted_by_path(self) -> None:
        out = dedupe_resources(self._sample())
        paths = [r.save_path for r in out]
        assert paths == sorted(paths)

    def test_idempotent(self) -> None:
        once = dedupe_resources(self._sample())
        assert dedupe_resources(once) == once

    def test_renamed_path_sorted_past_other_group(self) -> None:
        sample = [
            _res("https://a.com/style.css", "style.css"),
            _res("https://b.com/style.css", "style.css"),
            _res("https://c.com/style 2.css", "style 2.css"),
        ]
        once = dedupe_resources(sample)
        assert [r.save_path for r in once] == ["style (1).css", "style 2.css", "style.css"]
        assert dedupe_resources(once) == once
