import unittest

from ccmd.search import SearchOptions, search
from ccmd.sync import InstalledCommand


def _cmd(name: str, description: str = "", author: str = "", tags: str = "") -> InstalledCommand:
    return InstalledCommand(
        name=name,
        source=f"https://github.com/owner/{name}.git",
        version="v1.0.0",
        metadata={"description": description, "author": author, "tags": tags, "repository": f"owner/{name}"},
    )


COMMANDS = [
    _cmd("review", "Review pull requests", "alice", "git,review"),
    _cmd("fmt", "Format source files", "Bob", "format"),
    _cmd("commit-msg", "Write commit messages", "alice", "git"),
]


class TestSearch(unittest.TestCase):
    def names(self, **kw) -> list[str]:
        return [r.name for r in search(COMMANDS, SearchOptions(**kw))]

    def test_no_filters_matches_nothing_unless_all(self) -> None:
        self.assertEqual(self.names(), [])
        self.assertEqual(self.names(show_all=True), ["commit-msg", "fmt", "review"])

    def test_keyword_checks_name_repository_and_description(self) -> None:
        self.assertEqual(self.names(keyword="FORMAT"), ["fmt"])
        self.assertEqual(self.names(keyword="owner/review"), ["review"])
        self.assertEqual(self.names(keyword="commit"), ["commit-msg"])

    def test_filters_are_combined(self) -> None:
        self.assertEqual(self.names(author="ALICE"), ["commit-msg", "review"])
        self.assertEqual(self.names(tags=("git",)), ["commit-msg", "review"])
        self.assertEqual(self.names(tags=("git", "review")), ["review"])
        self.assertEqual(self.names(author="alice", keyword="messages"), ["commit-msg"])
        self.assertEqual(self.names(author="bob", tags=("git",)), [])

    def test_result_fields(self) -> None:
        [result] = search(COMMANDS, SearchOptions(keyword="fmt"))
        self.assertEqual(result.tags, ("format",))
        self.assertEqual(result.repository, "owner/fmt")
        self.assertEqual(result.author, "Bob")


if __name__ == "__main__":
    unittest.main()
