"""
Tests for structural analysis: node/edge extraction and shape metrics.
"""

from common.models import Complexity
from diagrams.analyzer import DiagramAnalyzer, Edge, parse_flowchart_statement, split_statements


class TestFlowchartStatements:
    def test_chain_with_labels_and_shapes(self):
        statement = parse_flowchart_statement('A[Start] -->|go| B{"Check?"} --> C((Done))')

        assert statement.complete
        assert [ref.label for group in statement.groups for ref in group] == [
            "Start",
            "Check?",
            "Done",
        ]
        assert statement.edges() == [Edge("A", "B", "go"), Edge("B", "C", "")]

    def test_ampersand_groups_fan_out(self):
        statement = parse_flowchart_statement("A & B --> C & D")
        assert len(statement.edges()) == 4

    def test_text_link_is_normalized(self):
        statement = parse_flowchart_statement("A -- yes --> B")
        assert statement.edges() == [Edge("A", "B", "yes")]
        assert statement.render() == "A -->|yes| B"

    def test_render_normalizes_spacing(self):
        assert parse_flowchart_statement("A-->B").render() == "A --> B"

    def test_not_a_statement(self):
        assert parse_flowchart_statement("  --> B") is None

    def test_split_statements_respects_quotes(self):
        assert split_statements('A --> B; C["x;y"] --> D') == ["A --> B", ' C["x;y"] --> D']


class TestAnalyzer:
    def test_flowchart_graph(self, analyzer: DiagramAnalyzer):
        analysis = analyzer.analyze("flowchart LR\n    A[Start] --> B\n    B --> C\n    B --> D")

        assert analysis.diagram_type == "flowchart"
        assert analysis.direction == "LR"
        assert list(analysis.nodes) == ["A", "B", "C", "D"]
        assert analysis.nodes["A"] == "Start"
        assert analysis.edge_count == 3
        assert analysis.roots == ["A"]
        assert analysis.is_tree
        assert analysis.branching_factor == 2
        assert analysis.max_depth == 3
        assert analysis.complexity == Complexity.SIMPLE

    def test_cycle_detection(self, analyzer: DiagramAnalyzer):
        analysis = analyzer.analyze("flowchart TD\n    A --> B --> C --> A")
        assert analysis.cyclic
        assert not analysis.is_tree
        assert "cycle detected" in analysis.issues

    def test_isolated_nodes_reported(self, analyzer: DiagramAnalyzer):
        analysis = analyzer.analyze("flowchart TD\n    A --> B\n    C")
        assert analysis.issues == ["isolated nodes: C"]

    def test_sequence_participants_are_actors(self, analyzer: DiagramAnalyzer):
        code = "sequenceDiagram\n    participant U as User\n    U->>API: login\n    API-->>U: token"
        analysis = analyzer.analyze(code)

        assert analysis.nodes == {"U": "User", "API": "API"}
        assert analysis.edges == [Edge("U", "API", "login"), Edge("API", "U", "token")]
        assert analysis.has_actors

    def test_flowchart_actor_words(self, analyzer: DiagramAnalyzer):
        analysis = analyzer.analyze("flowchart TD\n    user[Customer] --> api[API server]")
        assert analysis.has_actors

    def test_state_pseudo_states(self, analyzer: DiagramAnalyzer):
        analysis = analyzer.analyze("stateDiagram-v2\n    [*] --> Idle\n    Idle --> [*]: stop")
        assert analysis.edges == [Edge("__start__", "Idle"), Edge("Idle", "__end__", "stop")]

    def test_er_relationships(self, analyzer: DiagramAnalyzer):
        analysis = analyzer.analyze('erDiagram\n    CUSTOMER ||--o{ ORDER : "places"')
        assert analysis.edges == [Edge("CUSTOMER", "ORDER", "places")]

    def test_gantt_dependencies(self, analyzer: DiagramAnalyzer):
        code = (
            "gantt\n    dateFormat YYYY-MM-DD\n    section Work\n"
            "    Design :d1, 2024-01-01, 3d\n    Build :b1, after d1, 5d"
        )
        analysis = analyzer.analyze(code)

        assert analysis.nodes == {"d1": "Design", "b1": "Build"}
        assert analysis.edges == [Edge("d1", "b1")]
        assert analysis.has_timed_stages
        assert analysis.extras["dateFormat"] == "YYYY-MM-DD"

    def test_mindmap_tree(self, analyzer: DiagramAnalyzer):
        code = "mindmap\n  root((Product))\n    Features\n      Search\n    Pricing"
        analysis = analyzer.analyze(code)

        assert list(analysis.nodes) == ["Product", "Features", "Search", "Pricing"]
        assert analysis.is_tree
        assert analysis.roots == ["Product"]

    def test_non_graph_type_keeps_statements(self, analyzer: DiagramAnalyzer):
        analysis = analyzer.analyze('pie\n    "A" :  1')
        assert not analysis.is_graph
        assert analysis.statements == ['"A" : 1']
        assert analysis.structure_key() == ("pie", ('"A" : 1',))

    def test_large_graph_is_complex(self, analyzer: DiagramAnalyzer):
        lines = [f"    N{i} --> N{i + 1}" for i in range(25)]
        lines += [f"    N0 --> M{i}" for i in range(6)]
        analysis = analyzer.analyze("flowchart TD\n" + "\n".join(lines))
        assert analysis.complexity == Complexity.COMPLEX
