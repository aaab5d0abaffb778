"""
Gating hierarchies as trees.

Populations are identified by their ``root/A/B`` path, which is what both
template gating and FlowJo workspaces produce, so one tree type serves both.
"""

import logging

import matplotlib.pyplot as plt
import networkx as nx

from .template import ROOT

logger = logging.getLogger(__name__)


def build_gating_tree(paths, counts=None):
    """DiGraph parent -> child over population paths (intermediate nodes added)."""
    tree = nx.DiGraph()
    tree.add_node(ROOT, label=ROOT)
    for path in paths:
        parts = path.split('/')
        if parts[0] != ROOT:
            parts = [ROOT] + parts
        for depth in range(1, len(parts)):
            parent = '/'.join(parts[:depth])
            child = '/'.join(parts[:depth + 1])
            if child not in tree:
                tree.add_node(child, label=parts[depth])
            tree.add_edge(parent, child)
    if counts is not None:
        for node in tree.nodes:
            if node in counts:
                tree.nodes[node]['count'] = int(counts[node])
    return tree


def tree_from_template(template, counts=None):
    return build_gating_tree(template['path'], counts=counts)


def render_text_tree(tree, counts=None):
    """
    Indented text rendering of the hierarchy, e.g.::

        root (1000)
        +-- Lymphocytes (800)
            +-- Tcells (500)
    """
    lines = []

    def _walk(node, depth):
        label = tree.nodes[node].get('label', node)
        count = counts.get(node) if counts is not None else tree.nodes[node].get('count')
        text = f"{label} ({int(count)})" if count is not None else label
        prefix = '' if depth == 0 else '    ' * (depth - 1) + '+-- '
        lines.append(prefix + text)
        for child in tree.successors(node):
            _walk(child, depth + 1)

    for root in [n for n in tree.nodes if tree.in_degree(n) == 0]:
        _walk(root, 0)
    return '\n'.join(lines)


def tree_layout(tree):
    """Top-down layered positions: depth on y, leaves spread evenly on x."""
    positions = {}
    next_x = [0.0]

    def _place(node, depth):
        children = list(tree.successors(node))
        if not children:
            x = next_x[0]
            next_x[0] += 1.0
        else:
            xs = [_place(child, depth + 1) for child in children]
            x = (min(xs) + max(xs)) / 2.0
        positions[node] = (x, -float(depth))
        return x

    for root in [n for n in tree.nodes if tree.in_degree(n) == 0]:
        _place(root, 0)
    return positions


def plot_gating_tree(tree, title='Gating hierarchy'):
    """Draw the hierarchy with counts in the node labels when available."""
    positions = tree_layout(tree)
    labels = {}
    for node, data in tree.nodes(data=True):
        label = data.get('label', node)
        labels[node] = f"{label}\n{data['count']}" if 'count' in data else label

    n_leaves = sum(1 for n in tree.nodes if tree.out_degree(n) == 0)
    depth = max((-y for _, y in positions.values()), default=0)
    fig, ax = plt.subplots(figsize=(max(6, 1.8 * n_leaves), max(4, 1.5 * (depth + 1))))
    nx.draw_networkx_edges(tree, positions, ax=ax, arrows=False, edge_color='grey')
    nx.draw_networkx_labels(
        tree, positions, labels=labels, ax=ax, font_size=9,
        bbox={'boxstyle': 'round', 'facecolor': 'white', 'edgecolor': 'steelblue'}
    )
    ax.set_title(title)
    ax.axis('off')
    fig.tight_layout()
    return fig
