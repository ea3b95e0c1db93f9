import pytest

from linguaverse.__main__ import pick_topic

TOPICS = ["Street food", "Hiking trips", "Music festivals"]


@pytest.mark.parametrize("answer, topic", [
    ("2\n", "Hiking trips"),
    ("1", "Street food"),
    ("\n", "Street food"),
    ("my first job\n", "my first job"),
    ("7", "7"),
])
def test_pick_topic(answer, topic):
    assert pick_topic(TOPICS, answer) == topic
