import unittest

from webmail.envelope import encode_envelope
from webmail.models import ConversationRecord, MessageRecord, PeerIdentity
from webmail.projection import (
    WELCOME_ID,
    WELCOME_SENDER,
    WELCOME_SUBJECT,
    project,
    reconcile_selection,
    thread_view,
)
from webmail.store import ConversationStore

ALICE = "0x" + "a" * 40
BOB = "0x" + "b" * 40


def record(conversation_id, *, display=None, peer=None, last_at=None, created=None, content="hi"):
    last = None
    if last_at is not None:
        last = MessageRecord(f"{conversation_id}-m", conversation_id, "peer", content, last_at)
    return ConversationRecord(
        id=conversation_id,
        peer_identifier=peer,
        peer_display_address=display,
        last_message=last,
        created_at_ns=created,
    )


class ProjectTests(unittest.TestCase):
    def test_welcome_first_then_newest_activity(self):
        records = [
            record("old", last_at=10),
            record("created-only", created=20),
            record("nothing"),
            record("new", last_at=30),
        ]

        items = project(records)

        self.assertEqual([item.id for item in items], [WELCOME_ID, "new", "created-only", "old", "nothing"])
        self.assertTrue(items[0].is_welcome)
        self.assertEqual(items[0].label, WELCOME_SENDER)
        self.assertEqual(items[-1].timestamp_ns, 0)

    def test_ties_keep_input_order(self):
        records = [record("b", last_at=5), record("a", last_at=5), record("c", last_at=5)]

        self.assertEqual([item.id for item in project(records)][1:], ["b", "a", "c"])

    def test_search_matches_best_label_case_insensitively(self):
        records = [
            record("c1", display=BOB, peer="inbox-bob"),
            record("c2", peer="inbox-carol"),
            record("c3"),
        ]

        self.assertEqual([item.id for item in project(records, "0XBBB")], ["c1"])
        self.assertEqual([item.id for item in project(records, "CAROL")], ["c2"])
        self.assertEqual([item.id for item in project(records, "c3")], ["c3"])
        self.assertEqual(project(records, "inbox-bob"), [])

    def test_welcome_kept_when_query_matches_its_text(self):
        for query in ("welcome", "WALLET IS NOW", "replied to"):
            items = project([record("c1", display=BOB)], query)
            self.assertEqual(items[0].id, WELCOME_ID, query)

    def test_blank_query_behaves_like_no_query(self):
        self.assertEqual(len(project([record("c1")], "   ")), 2)

    def test_items_carry_subject_and_preview(self):
        records = [
            record("env", display=ALICE, last_at=2, content=encode_envelope("Lunch", "Noon?")),
            record("text", last_at=1, content="plain words\nmore"),
            record("empty"),
        ]

        items = {item.id: item for item in project(records)}

        self.assertEqual((items["env"].subject, items["env"].preview), ("Lunch", "Noon?"))
        self.assertEqual(items["env"].label, "0xaaaa…aaaa")
        self.assertEqual(items["text"].subject, "plain words")
        self.assertEqual(items["empty"].subject, "(no subject)")
        self.assertEqual(items["empty"].preview, "")

    def test_projects_from_store(self):
        store = ConversationStore(client=None)
        store.upsert_conversation("c1", peer_display_address=BOB, created_at_ns=1)

        items = project(store)

        self.assertEqual([item.id for item in items], [WELCOME_ID, "c1"])


class SelectionTests(unittest.TestCase):
    def test_selection_falls_back_to_first_item(self):
        records = [record("A", last_at=3), record("B", last_at=2), record("C", last_at=1)]
        items = project(records)
        selected = reconcile_selection("B", items)
        self.assertEqual(selected, "B")

        narrowed = [item for item in items if item.id != "B"]
        self.assertEqual(reconcile_selection(selected, narrowed), WELCOME_ID)
        self.assertEqual(reconcile_selection(selected, narrowed[1:]), "A")

    def test_empty_list_clears_selection(self):
        self.assertIsNone(reconcile_selection("A", []))
        self.assertIsNone(reconcile_selection(None, []))

    def test_no_selection_picks_first(self):
        self.assertEqual(reconcile_selection(None, project([])), WELCOME_ID)


class ThreadViewTests(unittest.TestCase):
    def test_welcome_thread_is_static(self):
        [entry] = thread_view(store=None, conversation_id=WELCOME_ID, self_identifier=None)

        self.assertEqual(entry.subject, WELCOME_SUBJECT)
        self.assertFalse(entry.is_self)
        self.assertTrue(entry.decoded.is_email)

    def test_thread_labels_self_and_peer(self):
        store = ConversationStore(client=None)
        store.append_messages(
            "c1",
            [
                MessageRecord("m1", "c1", "inbox-bob", encode_envelope("Hi", "hello"), 1),
                MessageRecord("m2", "c1", "INBOX-ALICE", "plain reply", 2),
                MessageRecord("m3", "c1", "inbox-carol", "who?", 3),
            ],
        )
        store._identities["inbox-bob"] = PeerIdentity("inbox-bob", BOB)

        entries = thread_view(store, "c1", "inbox-alice")

        self.assertEqual([e.sender_label for e in entries], ["0xbbbb…bbbb", "You", "inbox-carol"])
        self.assertEqual([e.is_self for e in entries], [False, True, False])
        self.assertEqual(entries[0].subject, "Hi")
        self.assertEqual(entries[0].body, "hello")
        self.assertEqual(entries[1].subject, "")
        self.assertEqual(entries[1].body, "plain reply")


if __name__ == "__main__":
    unittest.main()
