from __future__ import annotations

import pytest
from conftest import board_doc, clip, thread_doc

from board.errors import MalformedResponse
from board.models import parse_thread_posts, parse_threads


def test_parse_threads_normalises_post_numbers_to_str() -> None:
    doc = board_doc(thread_doc("100", "webm thread", files=("a.webm",), replies=((101, ("b.webm",)),)))

    threads = parse_threads(doc)

    assert len(threads) == 1
    assert threads[0].num == "100"
    assert [p.num for p in threads[0].posts] == ["100", "101"]
    assert threads[0].root.comment == "webm thread"
    assert threads[0].root.files[0].name == "a.webm"


def test_parse_threads_falls_back_to_root_post_number() -> None:
    doc = {"threads": [{"posts": [{"num": 7, "comment": "x", "files": []}]}]}

    assert parse_threads(doc)[0].num == "7"


def test_parse_threads_tolerates_null_files_and_comment() -> None:
    doc = {"threads": [{"thread_num": "5", "posts": [{"num": 5, "comment": None, "files": None}]}]}

    root = parse_threads(doc)[0].root

    assert root.comment == ""
    assert root.files == ()


def test_thread_without_posts_has_no_root() -> None:
    assert parse_threads({"threads": [{"thread_num": "1", "posts": []}]})[0].root is None


@pytest.mark.parametrize("document", [{}, {"threads": None}, {"threads": ["oops"]}, []])
def test_parse_threads_rejects_unexpected_shapes(document) -> None:
    with pytest.raises(MalformedResponse):
        parse_threads(document)


def test_parse_thread_posts_needs_a_thread() -> None:
    with pytest.raises(MalformedResponse):
        parse_thread_posts({"threads": []})


def test_clip_record_dict_view() -> None:
    assert clip("a.webm", thread="9", post="12").to_dict() == {
        "name": "a.webm",
        "path": "src/9/a.webm",
        "thread": "9",
        "post": "12",
    }
