import pytest

from truststars.exceptions import ValidationError
from truststars.utils.repo_names import natural_key, parse_repository_name


@pytest.mark.parametrize(
    "value,expected",
    [
        ("octo/widgets", "octo/widgets"),
        ("  Octo/Widgets  ", "Octo/Widgets"),
        ("https://github.com/vercel/next.js", "vercel/next.js"),
        ("https://github.com/octo/widgets/", "octo/widgets"),
        ("github.com/octo/widgets.git", "octo/widgets"),
        ("http://www.github.com/octo/my_repo-2", "octo/my_repo-2"),
    ],
)
def test_parse_repository_name(value: str, expected: str) -> None:
    assert parse_repository_name(value) == expected


@pytest.mark.parametrize("value", ["", "widgets", "not a repository", "https://github.com/", "octo/wid gets"])
def test_parse_repository_name_rejects_malformed_input(value: str) -> None:
    with pytest.raises(ValidationError) as excinfo:
        parse_repository_name(value)

    assert excinfo.value.user_message == "Invalid GitHub URL format"


def test_natural_key_is_case_insensitive() -> None:
    assert natural_key("Octo/Widgets") == natural_key("octo/WIDGETS") == "octo/widgets"
