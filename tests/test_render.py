import unittest

from bottles import render
from bottles.content import plain_text
from bottles.models import Bottle
from bottles.models import Comment


def _bottle(content="hello", name="sea", featured=False, comments=0):
    return Bottle(
        id=3,
        name=name,
        author_id="1",
        guild_id="g1",
        channel_id="c1",
        author_name="alice",
        content=content,
        is_featured=featured,
        comment_count=comments,
        created_day=0,
    )


def _comment(cid, text):
    return Comment(
        id=cid,
        cid=cid,
        bid=3,
        author_id="2",
        guild_id="g1",
        channel_id="c2",
        author_name="bob",
        content=text,
        created_day=0,
    )


class DrawEnvelopeTests(unittest.TestCase):
    def test_text_bottle_is_single_message(self):
        envelopes = render.draw_envelopes(
            _bottle(),
            [_comment(1, "hi"), _comment(2, "yo")],
            total_comments=5,
            page=1,
            page_size=2,
            show_instructions=False,
            prefix="!",
        )
        self.assertEqual(len(envelopes), 1)
        text = plain_text(envelopes[0])
        self.assertIn("You found bottle #3 from “alice”!", text)
        self.assertIn("Date: 1970-01-01", text)
        self.assertIn("1.bob: hi\n2.bob: yo", text)
        self.assertTrue(text.endswith("Page 1/3"))

    def test_comments_over_limit_move_to_extra_messages(self):
        comments = [_comment(i, "x" * 80) for i in range(1, 6)]
        envelopes = render.draw_envelopes(
            _bottle(),
            comments,
            total_comments=5,
            page=1,
            page_size=5,
            show_instructions=False,
            prefix="!",
            limit=200,
        )
        self.assertNotIn("bob", envelopes[0])
        self.assertGreater(len(envelopes), 2)
        self.assertTrue(all(render.rendered_length(e) <= 200 for e in envelopes[1:]))
        self.assertIn("----Comments", envelopes[1])
        self.assertTrue(envelopes[-1].endswith("Page 1/1"))

    def test_audio_bottle_sends_caption_separately(self):
        envelopes = render.draw_envelopes(
            _bottle(content='<audio src="https://x/a.mp3"/>'),
            [],
            total_comments=0,
            page=1,
            page_size=0,
            show_instructions=True,
            prefix="?",
        )
        self.assertEqual(len(envelopes), 2)
        self.assertIn("?bottle.comment 3", plain_text(envelopes[0]))
        self.assertTrue(envelopes[1].startswith("<audio"))

    def test_markup_in_names_is_escaped(self):
        envelopes = render.draw_envelopes(
            _bottle(name="<img src='x'/>"),
            [],
            total_comments=0,
            page=1,
            page_size=0,
            show_instructions=False,
            prefix="!",
        )
        self.assertIn("Title: <img src='x'/>", plain_text(envelopes[0]))


class ListingTests(unittest.TestCase):
    def test_bottle_listing_summarises_content(self):
        text = render.bottle_listing(
            "All bottles:",
            [_bottle(content='<video src="https://x/v.mp4"/>', featured=True, comments=4)],
            page=1,
            total=1,
            page_size=10,
        )
        self.assertIn("#3 sea [featured] | 4 comments | [video]", text)
        self.assertTrue(text.endswith("Page 1/1"))

    def test_empty_listing(self):
        self.assertEqual(render.bottle_listing("Mine:", [], page=1, total=0, page_size=5), "Mine:\n(no bottles)")
        self.assertEqual(render.id_listing("Mine:", []), "Mine:\n(no bottles)")

    def test_page_count(self):
        self.assertEqual(render.page_count(0, 5), 1)
        self.assertEqual(render.page_count(11, 5), 3)
        self.assertEqual(render.page_count(11, 0), 1)


if __name__ == "__main__":
    unittest.main()
