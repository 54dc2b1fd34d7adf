import pytest

from niblet.schemas.models import Message
from niblet.utils.learning import DEFAULT_POLICY, LearningPolicy, extract_learning


@pytest.mark.parametrize(
    "text, expected",
    [
        ("I prefer vegetarian meals", {"diet": "vegetarian", "likes": "vegetarian meals"}),
        ("I'm allergic to shellfish and dairy", {"allergies": "shellfish"}),
        ("I don't like mushrooms.", {"dislikes": "mushrooms"}),
        ("i love greek yogurt, it's great", {"likes": "greek yogurt"}),
        ("Doing intermittent fasting this month", {"diet": "intermittent fasting"}),
        ("Just had lunch", {}),
    ],
)
def test_preferences_in(text, expected):
    assert DEFAULT_POLICY.preferences_in(text) == expected


def test_topics_in_matches_word_prefixes():
    assert DEFAULT_POLICY.topics_in("Lots of calories and a long workout") == {"nutrition", "fitness"}
    assert DEFAULT_POLICY.topics_in("Slept badly, so tired") == {"sleep"}
    assert DEFAULT_POLICY.topics_in("Nothing relevant here") == set()


def test_extract_learning_reads_user_messages_only():
    messages = [
        Message(id="1", role="assistant", content="Do you like keto?"),
        Message(id="2", role="user", content="I hate cilantro"),
        Message(id="3", role="system", content="AI personality changed to Tough Love"),
        Message(id="4", role="user", content="Trying to lose weight"),
    ]
    topics, preferences = extract_learning(messages)
    assert topics == {"weight"}
    assert preferences == {"dislikes": "cilantro"}


def test_later_mentions_override_earlier_ones():
    messages = [
        Message(id="1", role="user", content="I'm on keto"),
        Message(id="2", role="user", content="Switched to paleo now"),
    ]
    _, preferences = extract_learning(messages)
    assert preferences["diet"] == "paleo"


def test_custom_policy_replaces_tables():
    policy = LearningPolicy(topics={"coffee": ("espresso", "latte")}, diets=("carnivore",), patterns=())
    topics, preferences = extract_learning(
        [Message(id="1", role="user", content="Carnivore diet, two lattes a day")],
        policy,
    )
    assert topics == {"coffee"}
    assert preferences == {"diet": "carnivore"}
