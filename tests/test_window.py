from klyra.compact import Message, Role
from klyra.window import Window


def _users(count):
    return [Message(role=Role.USER, content=f"m{i}") for i in range(count)]


def test_small_limit_is_raised_to_minimum():
    window = Window(1)
    for message in _users(10):
        window.add(message)
    got = window.messages()
    assert len(got) == 4
    assert [m.content for m in got] == ["m6", "m7", "m8", "m9"]


def test_system_message_is_preserved():
    window = Window(5)
    window.add(Message(role=Role.SYSTEM, content="system"))
    for message in _users(10):
        window.add(message)
    got = window.messages()
    assert len(got) == 5
    assert got[0].role == Role.SYSTEM
    assert got[-1].content == "m9"


def test_under_limit_keeps_everything():
    window = Window(10)
    messages = _users(3)
    for message in messages:
        window.add(message)
    assert window.messages() == messages


def test_returned_list_is_a_copy():
    window = Window(10)
    for message in _users(3):
        window.add(message)
    first = window.messages()
    first.clear()
    assert len(window.messages()) == 3


def test_budgeted_window_summarizes_old_messages():
    window = Window(40, 80)
    window.add(Message(role=Role.SYSTEM, content="system"))
    window.add(Message(role=Role.USER, content="old " * 500))
    window.add(Message(role=Role.ASSISTANT, content="older " * 500))
    window.add(Message(role=Role.USER, content="recent"))
    got = window.messages()
    assert got[0].content == "system"
    assert got[1].content.startswith("Context summary")
    assert got[-1].content == "recent"
    assert window.messages() == got