import os

from ccbridge.workspace.resolver import WorkspaceChannelResolver


def _resolver() -> WorkspaceChannelResolver:
    return WorkspaceChannelResolver({
        "/srv/projects": "telegram|111",
        "/srv/projects/api/": "telegram|222",
        "~/work": "slack|bot|C9",
    })


def test_longest_prefix_wins() -> None:
    resolver = _resolver()
    assert resolver.resolve("/srv/projects/api/src") == "telegram|222"
    assert resolver.resolve("/srv/projects/web") == "telegram|111"
    assert resolver.resolve("/srv/projects") == "telegram|111"
    assert resolver.resolve("/srv/projects/api") == "telegram|222"


def test_prefix_only_matches_on_path_boundaries() -> None:
    resolver = _resolver()
    assert resolver.resolve("/srv/projects-old") is None
    assert resolver.resolve("/srv/proj") is None
    assert resolver.resolve("/tmp") is None
    assert resolver.resolve(None) is None


def test_home_directory_is_expanded_on_both_sides() -> None:
    resolver = _resolver()
    assert resolver.resolve("~/work/repo") == "slack|bot|C9"
    assert resolver.resolve(os.path.expanduser("~/work/repo/")) == "slack|bot|C9"


def test_add_replaces_existing_mapping() -> None:
    resolver = _resolver()
    resolver.add("/srv/projects/", "discord|5")

    assert resolver.resolve("/srv/projects/web") == "discord|5"
    assert resolver.mappings["/srv/projects"] == "discord|5"
    assert len(resolver.mappings) == 3


def test_root_mapping_matches_everything() -> None:
    resolver = WorkspaceChannelResolver({"/": "telegram|root"})
    assert resolver.resolve("/anything/at/all") == "telegram|root"
    assert resolver.resolve("/") == "telegram|root"
