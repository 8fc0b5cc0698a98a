"""Tests for channel_normalizer."""
from channel_normalizer import (
    ChannelNormalizer,
    IncludeFilter,
    content_source_id,
    delivery_format,
    fix_url,
)
from playlist_decoder import RawEntry


def entry(title="CNN", url="http://a.test/cnn.ts", group="News", position=1, **fields):
    fields.setdefault("name", title)
    return RawEntry(title=title, url=url, group=group, fields=fields, position=position)


class TestHelpers:
    def test_fix_url(self):
        assert fix_url("http//a.test/x") == "http://a.test/x"
        assert fix_url("https//a.test/x") == "https://a.test/x"
        assert fix_url(" http://a.test/x ") == "http://a.test/x"
        assert fix_url(None) is None

    def test_delivery_format(self):
        assert delivery_format("http://a.test/x.m3u8") == "hls"
        assert delivery_format("http://a.test/x.ts") == "ts"
        assert delivery_format("http://a.test/x.mkv") == "ts"
        assert delivery_format("http://a.test/x", "mp4") == "mp4"
        assert delivery_format("http://a.test/x", "MKV") == "ts"
        assert delivery_format("http://a.test/x") == "ts"

    def test_content_source_id_is_stable(self):
        first = content_source_id("CNN", "CNN", "News", 1)
        assert first == content_source_id("CNN", "CNN", "News", 1)
        assert first != content_source_id("CNN", "CNN", "Sports", 1)
        assert first != content_source_id("CNN", "CNN", "News", 2)


class TestIncludeFilter:
    def test_exact_and_prefix(self):
        include = IncludeFilter(selected=["News"], prefixes=["UK |"])
        assert include.matches("News")
        assert include.matches("UK | Sports")
        assert not include.matches("US | Sports")

    def test_regex(self):
        include = IncludeFilter(prefixes=[r"^(UK|IE) "], use_regex=True)
        assert include.matches("IE Sports")
        assert not include.matches("US Sports")

    def test_invalid_regex_is_ignored(self):
        include = IncludeFilter(prefixes=["("], use_regex=True)
        assert not include.matches("anything")

    def test_is_empty(self):
        assert IncludeFilter().is_empty
        assert not IncludeFilter(selected=["x"]).is_empty


class TestChannelNormalizer:
    def test_record_fields(self):
        normalizer = ChannelNormalizer(playlist_id=3, user_id=9, batch_no="b1", enabled=True)
        (record,) = normalizer.normalize([entry(stream_id="cnn.us")])
        assert record["title"] == "CNN"
        assert record["stream_id"] == "cnn.us"
        assert record["group"] == "News"
        assert record["playlist_id"] == 3
        assert record["user_id"] == 9
        assert record["import_batch_no"] == "b1"
        assert record["enabled"] is True
        assert record["format"] == "ts"
        assert record["source_id"] == content_source_id("CNN", "CNN", "News", 3)
        assert "sort" not in record

    def test_title_falls_back_to_stream_id_then_name(self):
        normalizer = ChannelNormalizer(playlist_id=1)
        by_stream_id = normalizer.to_channel(entry(title=None, stream_id="abc", name="Name"))
        by_name = normalizer.to_channel(entry(title=None, name="Name"))
        assert by_stream_id["title"] == "abc"
        assert by_name["title"] == "Name"

    def test_provider_source_id_wins(self):
        raw = entry()
        raw.source_id = "1234"
        record = ChannelNormalizer(playlist_id=1).to_channel(raw)
        assert record["source_id"] == "1234"

    def test_fanned_out_copies_get_distinct_source_ids(self):
        normalizer = ChannelNormalizer(playlist_id=1)
        news, sports = normalizer.normalize([entry(group="News"), entry(group="Sports")])
        assert news["source_id"] != sports["source_id"]

    def test_ignored_file_types(self):
        normalizer = ChannelNormalizer(playlist_id=1, ignored_file_types=[".mkv"])
        records = list(normalizer.normalize([
            entry(url="http://a.test/movie.mkv"),
            entry(title="Live", url="http://a.test/live.ts"),
        ]))
        assert [r["title"] for r in records] == ["Live"]
        assert normalizer.skipped_extension == 1

    def test_group_filter_only_in_preprocess(self):
        include = IncludeFilter(selected=["News"])
        entries = [entry(group="News"), entry(title="ESPN", group="Sports")]

        normal = ChannelNormalizer(playlist_id=1, include_filter=include)
        assert len(list(normal.normalize(entries))) == 2

        preprocess = ChannelNormalizer(playlist_id=1, include_filter=include, preprocess=True)
        records = list(preprocess.normalize(entries))
        assert [r["group"] for r in records] == ["News"]
        assert preprocess.skipped_filter == 1
        assert list(preprocess.groups_seen) == ["News", "Sports"]

    def test_max_items(self):
        normalizer = ChannelNormalizer(playlist_id=1, max_items=2)
        records = list(normalizer.normalize([entry(title=f"C{i}") for i in range(5)]))
        assert len(records) == 2
        assert normalizer.max_items_hit is True

    def test_zero_max_items_is_unlimited(self):
        normalizer = ChannelNormalizer(playlist_id=1, max_items=0)
        assert len(list(normalizer.normalize([entry(title=f"C{i}") for i in range(5)]))) == 5
        assert normalizer.max_items_hit is False

    def test_auto_sort_uses_source_position(self):
        normalizer = ChannelNormalizer(playlist_id=1, auto_sort=True)
        records = list(normalizer.normalize([entry(position=4), entry(title="B", position=7)]))
        assert [r["sort"] for r in records] == [4, 7]

    def test_url_repaired(self):
        (record,) = ChannelNormalizer(playlist_id=1).normalize([entry(url="http//a.test/x.m3u8")])
        assert record["url"] == "http://a.test/x.m3u8"
        assert record["format"] == "hls"
