"""Neo4j backup/restore exporter using cypher-shell inside the pod.

Capture prefers APOC's streaming Cypher export. When APOC is not installed it
falls back to a bounded export built from plain Cypher queries, which is lossy:
only the first ``node_cap`` nodes (and relationships between them) are kept,
and property values cypher-shell cannot print as Cypher literals (temporal and
spatial types) do not replay.
"""

import json
import re
from pathlib import Path
from typing import List, Optional, Tuple

from ..._utils import logger
from ...cluster import ClusterAdapter, PodRef
from ...config import Neo4jConfig
from ...models import ComponentKind
from .base import CaptureStrategy, StoreExporter

APOC_EXPORT_QUERY = (
    "CALL apoc.export.cypher.all(null, {stream: true, format: 'cypher-shell'}) "
    "YIELD cypherStatements RETURN cypherStatements"
)

NODE_QUERY = (
    "MATCH (n) WITH n LIMIT {cap} "
    "RETURN id(n) AS id, reduce(s = '', l IN labels(n) | s + ':`' + l + '`') AS labels, "
    "properties(n) AS props"
)

RELATIONSHIP_QUERY = (
    "MATCH (n) WITH n LIMIT {cap} WITH collect(id(n)) AS ids "
    "MATCH (a)-[r]->(b) WHERE id(a) IN ids AND id(b) IN ids "
    "RETURN id(a) AS src, type(r) AS type, id(b) AS dst, properties(r) AS props"
)

DELETE_ALL_QUERY = "MATCH (n) DETACH DELETE n"

IMPORT_LABEL = "_DrImport"
IMPORT_ID = "_dr_id"

_STRING = r'"(?:[^"\\]|\\.)*"'
_NODE_ROW = re.compile(rf"^(-?\d+), ({_STRING}), (\{{.*\}})$")
_RELATIONSHIP_ROW = re.compile(rf"^(-?\d+), ({_STRING}), (-?\d+), (\{{.*\}})$")
_STRING_LITERAL = re.compile(_STRING, re.DOTALL)


def decode_literal(literal: str) -> str:
    """Decode a double-quoted string as printed by cypher-shell --format plain."""
    try:
        return json.loads(literal, strict=False)
    except ValueError:
        return literal[1:-1].replace('\\"', '"').replace("\\'", "'").replace("\\\\", "\\")


def parse_statement_stream(output: str) -> str:
    """Turn the plain-format output of the APOC stream export into a Cypher script."""
    _, _, body = output.partition("\n")
    chunks = [decode_literal(m.group(0)) for m in _STRING_LITERAL.finditer(body)]
    return "\n".join(chunk.rstrip("\n") for chunk in chunks if chunk.strip())


def _merge_props(props: str, extra: str) -> str:
    inner = props.strip()[1:-1].strip()
    return f"{{{extra}, {inner}}}" if inner else f"{{{extra}}}"


def build_bounded_script(node_output: str, relationship_output: str) -> Tuple[str, int, int, int]:
    """Build a replayable Cypher script from the bounded node/relationship queries.

    Returns:
        (script, node_count, relationship_count, skipped_rows)
    """
    statements = [
        f"CREATE INDEX dr_import_id IF NOT EXISTS FOR (n:{IMPORT_LABEL}) ON (n.{IMPORT_ID});",
    ]
    nodes = relationships = skipped = 0

    for line in node_output.splitlines()[1:]:
        match = _NODE_ROW.match(line.strip())
        if not match:
            if line.strip():
                skipped += 1
            continue
        node_id, labels, props = match.groups()
        labels = decode_literal(labels)
        statements.append(
            f"CREATE (:{IMPORT_LABEL}{labels} {_merge_props(props, f'{IMPORT_ID}: {node_id}')});"
        )
        nodes += 1

    for line in relationship_output.splitlines()[1:]:
        match = _RELATIONSHIP_ROW.match(line.strip())
        if not match:
            if line.strip():
                skipped += 1
            continue
        src, rel_type, dst, props = match.groups()
        rel_type = decode_literal(rel_type).replace("`", "``")
        statements.append(
            f"MATCH (a:{IMPORT_LABEL} {{{IMPORT_ID}: {src}}}), (b:{IMPORT_LABEL} {{{IMPORT_ID}: {dst}}}) "
            f"CREATE (a)-[:`{rel_type}` {props}]->(b);"
        )
        relationships += 1

    statements.append(f"MATCH (n:{IMPORT_LABEL}) REMOVE n:{IMPORT_LABEL}, n.{IMPORT_ID};")
    statements.append("DROP INDEX dr_import_id IF EXISTS;")
    return "\n".join(statements) + "\n", nodes, relationships, skipped


class Neo4jExporter(StoreExporter):
    """Export and restore the graph store as a Cypher statement stream."""

    component = ComponentKind.NEO4J
    artifact_name = "neo4j-dump.cypher"

    def __init__(self, cluster: ClusterAdapter, config: Neo4jConfig):
        super().__init__(cluster, config.selector)
        self.config = config

    def strategies(self) -> List[CaptureStrategy]:
        return [
            CaptureStrategy("apoc_export", self._apoc_export),
            CaptureStrategy("bounded_query", self._bounded_export),
        ]

    def _cypher_shell(self, *extra: str) -> List[str]:
        command = ["cypher-shell", "-u", self.config.username]
        if self.config.password:
            command += ["-p", self.config.password]
        return command + list(extra)

    async def _query(self, pod: PodRef, query: str) -> str:
        result = await self.cluster.exec_in_pod(pod, self._cypher_shell("--format", "plain", query))
        if not result.ok:
            raise self._capture_error(f"cypher-shell {result.describe()}")
        return result.stdout

    async def _apoc_export(self, pod: PodRef, artifact: Path) -> None:
        output = await self._query(pod, APOC_EXPORT_QUERY)
        script = parse_statement_stream(output)
        if not script:
            raise self._capture_error("APOC export returned no statements")

        with open(artifact, "w", encoding="utf-8") as f:
            f.write(script + "\n")

    async def _bounded_export(self, pod: PodRef, artifact: Path) -> None:
        cap = self.config.node_cap
        node_output = await self._query(pod, NODE_QUERY.format(cap=cap))
        relationship_output = await self._query(pod, RELATIONSHIP_QUERY.format(cap=cap))

        script, nodes, relationships, skipped = build_bounded_script(node_output, relationship_output)
        if nodes == 0:
            raise self._capture_error("bounded export found no nodes")
        if nodes >= cap:
            logger.warning(f"Graph export truncated at node cap {cap:,}; larger graphs are only partially captured")
        if skipped:
            logger.warning(f"Bounded export skipped {skipped} row(s) that could not be parsed")

        logger.info(f"Bounded export: {nodes:,} nodes, {relationships:,} relationships")
        with open(artifact, "w", encoding="utf-8") as f:
            f.write(script)

    async def load_artifact(self, pod: PodRef, artifact_path: Path) -> Optional[str]:
        """Delete every node and relationship, then replay the statement stream."""
        logger.warning("Deleting all existing graph data")
        cleared = await self.cluster.exec_in_pod(pod, self._cypher_shell(DELETE_ALL_QUERY))
        if not cleared.ok:
            raise self._restore_error(f"detach delete {cleared.describe()}")

        replay = await self.cluster.exec_in_pod(pod, self._cypher_shell(), stdin_path=artifact_path)
        if not replay.ok:
            raise self._restore_error(f"cypher-shell replay {replay.describe()}")
