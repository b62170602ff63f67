from pathlib import Path

from courseshell.course_tree import build_tree, is_exercise_dir_name, label_for, leaf_paths, natural_key


def _mkdirs(root: Path, *paths: str) -> None:
    for path in paths:
        (root / path).mkdir(parents=True, exist_ok=True)


def test_only_numeric_prefixed_directories_are_kept(tmp_path: Path) -> None:
    _mkdirs(tmp_path, "1_intro", "notes", "2_arrays", "_meta")
    (tmp_path / "3_file.txt").write_text("not a directory", encoding="utf-8")

    nodes = build_tree(tmp_path)
    assert [node.key for node in nodes] == ["1_intro", "2_arrays"]
    assert [node.label for node in nodes] == ["Intro", "Arrays"]


def test_siblings_use_natural_order(tmp_path: Path) -> None:
    _mkdirs(tmp_path, "10_bar", "2_foo", "1_2_sub", "1_10_sub")
    assert [node.key for node in build_tree(tmp_path)] == ["1_2_sub", "1_10_sub", "2_foo", "10_bar"]


def test_chapters_have_children_and_leaves_have_completion(tmp_path: Path) -> None:
    _mkdirs(tmp_path, "1_basics/1_hello", "1_basics/2_sum/tests", "2_loops")
    done = {"1_basics/2_sum"}

    nodes = build_tree(tmp_path, lambda path: path in done)
    chapter = nodes[0]
    assert chapter.completed is None
    assert chapter.children is not None
    assert [(child.path, child.completed) for child in chapter.children] == [
        ("1_basics/1_hello", False),
        ("1_basics/2_sum", True),
    ]
    assert chapter.children[0].is_leaf
    assert nodes[1].key == "2_loops"
    assert nodes[1].completed is False


def test_missing_root_yields_empty_tree(tmp_path: Path) -> None:
    assert build_tree(tmp_path / "absent") == []
    assert build_tree(tmp_path) == []


def test_leaf_paths_flatten_in_display_order(tmp_path: Path) -> None:
    _mkdirs(tmp_path, "2_b/1_x", "1_a/2_z", "1_a/1_y")
    assert leaf_paths(build_tree(tmp_path)) == ["1_a/1_y", "1_a/2_z", "2_b/1_x"]


def test_exercise_dir_name_pattern() -> None:
    assert is_exercise_dir_name("1_intro")
    assert is_exercise_dir_name("2_3_loops")
    assert is_exercise_dir_name("001-basics+")
    assert is_exercise_dir_name("7")
    assert not is_exercise_dir_name("intro_1")
    assert not is_exercise_dir_name("_meta")


def test_labels() -> None:
    assert label_for("1_hello_world") == "Hello World"
    assert label_for("2_3-arrays-and-lists") == "Arrays And Lists"
    assert label_for("001-basics+") == "Basics+"
    assert label_for("42") == "42"


def test_natural_key_orders_numbers_numerically() -> None:
    names = ["10_a", "9_a", "1_b", "1_a"]
    assert sorted(names, key=natural_key) == ["1_a", "1_b", "9_a", "10_a"]
