from tests.storage.base import ConversationStoreTestCase


class SessionRepositoryTests(ConversationStoreTestCase):
    def test_new_session_gets_placeholder_title(self) -> None:
        session = self.make_session()
        self.assertEqual("New chat", session.title)
        self.assertEqual("active", session.status)
        self.assertIsNone(session.last_message_at)

    def test_message_sequence_is_dense_from_zero(self) -> None:
        session = self.make_session()
        seqs = [self._sessions.append_message(session.id, role, text).seq
                for role, text in [("user", "a"), ("assistant", "b"), ("user", "c"), ("assistant", "d")]]
        self.assertEqual([0, 1, 2, 3], seqs)
        stored = [m.seq for m in self._sessions.list_messages(session.id)]
        self.assertEqual([0, 1, 2, 3], stored)

    def test_sequences_are_per_session(self) -> None:
        first = self.make_session()
        second = self.make_session()
        self._sessions.append_message(first.id, "user", "one")
        self._sessions.append_message(first.id, "assistant", "two")
        message = self._sessions.append_message(second.id, "user", "other")
        self.assertEqual(0, message.seq)

    def test_append_updates_last_message_at(self) -> None:
        session = self.make_session()
        message = self._sessions.append_message(session.id, "user", "hello")
        reloaded = self._sessions.get_session(session.id)
        self.assertEqual(message.created_at, reloaded.last_message_at)

    def test_load_history_returns_window_oldest_first(self) -> None:
        session = self.make_session()
        for i in range(5):
            self._sessions.append_message(session.id, "user" if i % 2 == 0 else "assistant", f"m{i}")

        history = self._sessions.load_history(session.id, window=3)
        self.assertEqual(["m2", "m3", "m4"], [m["content"] for m in history])
        self.assertEqual("user", history[0]["role"])

    def test_count_messages_by_role(self) -> None:
        session = self.make_session()
        self._sessions.append_message(session.id, "user", "a")
        self._sessions.append_message(session.id, "assistant", "b")
        self._sessions.append_message(session.id, "user", "c")
        self.assertEqual(3, self._sessions.count_messages(session.id))
        self.assertEqual(2, self._sessions.count_messages(session.id, role="user"))

    def test_set_session_title_rejects_blank(self) -> None:
        session = self.make_session()
        with self.assertRaises(ValueError):
            self._sessions.set_session_title(session.id, "   ")
        renamed = self._sessions.set_session_title(session.id, "  Deploy notes ")
        self.assertEqual("Deploy notes", renamed.title)

    def test_archived_sessions_are_hidden_by_default(self) -> None:
        kept = self.make_session()
        archived = self.make_session()
        self._sessions.archive_session(archived.id)
        listed = [s.id for s in self._sessions.list_sessions()]
        self.assertIn(kept.id, listed)
        self.assertNotIn(archived.id, listed)
        self.assertIn(archived.id, [s.id for s in self._sessions.list_sessions(include_archived=True)])

    def test_get_message_with_none_returns_none(self) -> None:
        self.assertIsNone(self._sessions.get_message(None))
