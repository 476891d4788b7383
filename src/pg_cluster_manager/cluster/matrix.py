from pg_cluster_manager.utils.errors import InternalError

UNKNOWN = -2
DOWN = -1
UP = 0

CELL_VALUES = (UNKNOWN, DOWN, UP)
GLYPHS = {UNKNOWN: "?", DOWN: "x", UP: "*"}
NODE_HEADER = "Name"


class ConnectivityMatrix:
    """N x N reachability of nodes: cell (i, j) is node i's view of node j."""

    def __init__(self, nodes):
        # (node_id, node_name) pairs; order defines the output order
        self.nodes = list(nodes)
        self.node_ids = [node_id for node_id, _ in self.nodes]
        self.cells = {(i, j): UNKNOWN for i in self.node_ids for j in self.node_ids}

    def __contains__(self, node_id):
        return node_id in self.node_ids

    def set(self, i, j, status):
        if status not in CELL_VALUES:
            raise InternalError(f"invalid node status {status}")
        if (i, j) in self.cells:
            self.cells[(i, j)] = status

    def get(self, i, j):
        return self.cells[(i, j)]

    def row(self, i):
        return [self.cells[(i, j)] for j in self.node_ids]

    def __eq__(self, other):
        return isinstance(other, ConnectivityMatrix) and self.node_ids == other.node_ids and self.cells == other.cells

    def __repr__(self):
        return f"ConnectivityMatrix({self.node_ids}, {self.cells})"


class ConnectivityCube:
    """N x N x N view: one matrix per observing node."""

    def __init__(self, nodes):
        self.nodes = list(nodes)
        self.node_ids = [node_id for node_id, _ in self.nodes]
        self.matrices = {k: ConnectivityMatrix(self.nodes) for k in self.node_ids}

    def __getitem__(self, k):
        return self.matrices[k]

    def fold(self):
        """A[i][j] = max over k of M[k][i][j]: a link is up if any observer saw it up,
        down if at least one observer saw it down, unknown otherwise."""
        result = ConnectivityMatrix(self.nodes)
        for key in result.cells:
            result.cells[key] = max((m.cells[key] for m in self.matrices.values()), default=UNKNOWN)
        return result


def render_csv(matrix):
    """One "i,j,status" line per cell, rows in node order."""
    return [f"{i},{j},{matrix.get(i, j)}" for i in matrix.node_ids for j in matrix.node_ids]


def parse_matrix_csv(text, matrix, observer_id=None):
    """Parses "i,j,status" lines into matrix. Malformed lines leave the affected cell unknown and produce
    a warning. Returns the list of warnings."""
    warnings = []
    source = f" from node {observer_id}" if observer_id is not None else ""
    for line in (text or "").splitlines():
        line = line.strip()
        if not line:
            continue
        try:
            i, j, status = (int(v) for v in line.split(","))
        except ValueError:
            warnings.append(f"unable to parse --csv output{source}: \"{line}\"")
            continue
        if (i, j) not in matrix.cells or status not in CELL_VALUES:
            warnings.append(f"unexpected --csv output{source}: \"{line}\"")
            continue
        matrix.set(i, j, status)
    return warnings


def parse_show_csv(text, observer_id=None):
    """Parses "id,connection_status,recovery_type" lines of cluster show --csv.
    Returns ({node_id: connection_status}, warnings)."""
    statuses = {}
    warnings = []
    source = f" from node {observer_id}" if observer_id is not None else ""
    for line in (text or "").splitlines():
        line = line.strip()
        if not line:
            continue
        try:
            node_id, connection_status, recovery_type = (int(v) for v in line.split(","))
        except ValueError:
            warnings.append(f"unable to parse --csv output{source}: \"{line}\"")
            continue
        if connection_status not in (UP, DOWN) or recovery_type not in (-1, 0, 1):
            warnings.append(f"unexpected --csv output{source}: \"{line}\"")
            continue
        statuses[node_id] = connection_status
    return statuses, warnings


def glyph(status):
    try:
        return GLYPHS[status]
    except KeyError:
        raise InternalError(f"invalid node status {status}")


def render_text(matrix):
    """Renders the matrix as a table with the glyphs * (up), x (down) and ? (unknown)."""
    name_length = max([len(NODE_HEADER)] + [len(name) for _, name in matrix.nodes])
    lines = []

    header = f"{NODE_HEADER:>{name_length}} | Id "
    header += "".join(f"| {node_id:2d} " for node_id in matrix.node_ids)
    lines.append(header.rstrip())
    lines.append("-" * name_length + "-+----" + "+----" * len(matrix.node_ids))

    for node_id, node_name in matrix.nodes:
        line = f"{node_name:>{name_length}} | {node_id:2d} "
        line += "".join(f"|  {glyph(status)} " for status in matrix.row(node_id))
        lines.append(line.rstrip())
    return lines
