from textual.widgets import Tree
from rich.markup import escape

from yara_wizard_core.models import Rule


def _check(flag) -> str:
    if flag is None:
        return "(-)"
    return "(x)" if flag else "( )"


class RuleTree(Tree):
    """Namespaces and their rules; selecting a node toggles it."""

    def __init__(self, **kwargs):
        super().__init__("Rules", **kwargs)
        self.show_root = False
        self.auto_expand = False
        self.populated = False
        self.catalog = None

    def populate(self, catalog) -> None:
        if self.populated:
            return
        self.catalog = catalog
        self.clear()
        for ns, rules in catalog.namespaces().items():
            parent = self.root.add(self._ns_label(ns), data=ns, expand=True)
            for rule in rules:
                parent.add_leaf(self._rule_label(rule), data=rule)
        self.root.expand()
        self.populated = True

    def _ns_label(self, ns: str) -> str:
        count = len(self.catalog.namespaces().get(ns, []))
        return f"{_check(self.catalog.namespace_state(ns))} {ns} [dim]({count} rules available)[/dim]"

    @staticmethod
    def _rule_label(rule: Rule) -> str:
        label = f"{_check(rule.enabled)} {escape(rule.name)}"
        if rule.description:
            label += f" [dim]{escape(rule.description)}[/dim]"
        return label

    def toggle(self, node) -> None:
        data = node.data
        if isinstance(data, Rule):
            self.catalog.set_enabled(data.full_name, not data.enabled)
            node.set_label(self._rule_label(data))
            node.parent.set_label(self._ns_label(data.namespace))
        elif isinstance(data, str):
            enable = self.catalog.namespace_state(data) is not True
            self.catalog.set_namespace_enabled(data, enable)
            node.set_label(self._ns_label(data))
            for child in node.children:
                child.set_label(self._rule_label(child.data))

    def on_tree_node_selected(self, event: Tree.NodeSelected) -> None:
        self.toggle(event.node)
