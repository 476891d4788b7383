from pg_cluster_manager.cluster import matrix as mx

NODES = [(1, "node1"), (2, "node2"), (3, "node3")]


def test_new_matrix_is_unknown():
    matrix = mx.ConnectivityMatrix(NODES)
    assert set(matrix.cells.values()) == {mx.UNKNOWN}
    assert len(matrix.cells) == 9


def test_fold_takes_maximum_of_observers():
    cube = mx.ConnectivityCube(NODES)
    cube[1].set(1, 3, mx.DOWN)
    cube[2].set(1, 3, mx.UP)
    cube[2].set(2, 3, mx.DOWN)

    folded = cube.fold()

    assert folded.get(1, 3) == mx.UP
    assert folded.get(2, 3) == mx.DOWN
    assert folded.get(3, 3) == mx.UNKNOWN


def test_fold_is_idempotent():
    cube = mx.ConnectivityCube(NODES)
    cube[1].set(1, 2, mx.UP)
    cube[3].set(3, 1, mx.DOWN)
    assert cube.fold() == cube.fold()


def test_csv_render_parse_render_is_identical():
    matrix = mx.ConnectivityMatrix(NODES)
    matrix.set(1, 1, mx.UP)
    matrix.set(1, 3, mx.DOWN)
    lines = mx.render_csv(matrix)

    parsed = mx.ConnectivityMatrix(NODES)
    warnings = mx.parse_matrix_csv("\n".join(lines), parsed)

    assert warnings == []
    assert mx.render_csv(parsed) == lines


def test_malformed_csv_lines_leave_cells_unknown():
    matrix = mx.ConnectivityMatrix(NODES)
    warnings = mx.parse_matrix_csv("1,2,0\ngarbage\n1,9,0\n1,3,5", matrix, observer_id=2)

    assert matrix.get(1, 2) == mx.UP
    assert matrix.get(1, 3) == mx.UNKNOWN
    assert len(warnings) == 3
    assert all("from node 2" in w for w in warnings)


def test_parse_show_csv():
    statuses, warnings = mx.parse_show_csv("1,0,0\n2,-1,-1\n")
    assert statuses == {1: mx.UP, 2: mx.DOWN}
    assert warnings == []


def test_single_node_matrix():
    matrix = mx.ConnectivityMatrix([(1, "node1")])
    matrix.set(1, 1, mx.UP)
    assert mx.render_csv(matrix) == ["1,1,0"]


def test_render_text_glyphs():
    matrix = mx.ConnectivityMatrix(NODES)
    for i in (1, 2):
        matrix.set(i, 1, mx.UP)
        matrix.set(i, 2, mx.UP)
        matrix.set(i, 3, mx.DOWN)

    lines = mx.render_text(matrix)

    assert lines[0] == " Name | Id |  1 |  2 |  3"
    assert lines[2] == "node1 |  1 |  * |  * |  x"
    assert lines[4] == "node3 |  3 |  ? |  ? |  ?"
