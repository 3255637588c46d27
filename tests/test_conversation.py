from inference.conversation import ConversationHistory


def test_window_keeps_latest_turns():
    history = ConversationHistory("sys", max_turns=4)
    for i in range(6):
        history.add_turn("user" if i % 2 == 0 else "assistant", str(i))
    messages = history.get_messages()
    assert messages[0] == {"role": "system", "content": "sys"}
    assert [m["content"] for m in messages[1:]] == ["2", "3", "4", "5"]


def test_pending_turn_snapshot_is_isolated():
    history = ConversationHistory("sys")
    turn = history.begin("hello")
    history.add_turn("user", "meanwhile")
    assert turn.messages() == [
        {"role": "system", "content": "sys"},
        {"role": "user", "content": "hello"},
    ]


def test_commit_skips_empty_replies():
    history = ConversationHistory("sys")
    turn = history.begin("hello")
    history.commit(turn, "   ")
    assert len(history) == 0
    turn.reply = " Hi! "
    history.commit(turn)
    assert history.get_messages()[-1] == {"role": "assistant", "content": "Hi!"}
