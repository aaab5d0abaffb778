"""
Flow Main Script
Runs the flow cytometry analysis sections in order:
download -> load -> gate -> label -> plots -> UMAP -> SOM -> reports
"""

import argparse
import logging
import os
import sys
import traceback

import pandas as pd

from .config import get_output_dirs, load_config, resolve_path
from .data_processing import (
    dataset_fcs_dir,
    download_and_extract,
    download_file,
    fetch_dataset,
    find_fcs_files,
    load_sample,
    pool_samples,
    transform_sample
)
from .embedding_analysis import run_umap, select_channels, subsample_events
from .gating_analysis import (
    gate_samples,
    label_events,
    label_summary,
    load_gating_template,
    plot_gating_tree,
    population_statistics,
    render_text_tree,
    tree_from_template
)
from .gating_analysis.hierarchy import build_gating_tree
from .reporting import channel_summary, compare_groups, population_frequency_table
from .utils.shared_functions import load_csv_with_logging, sanitize_name, save_plot, save_results
from .visualization import (
    plot_gate_scatter,
    plot_marker_heatmap,
    plot_population_frequencies,
    plot_population_scatter,
    plot_som_mst,
    plot_umap
)

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger('flow_main')


class FlowAnalysis:
    """Holds the config, output directories and the intermediate tables of one run"""

    def __init__(self, config):
        self.config = config
        self.dirs = get_output_dirs(config)
        self.seed = config.get('seed', 42)
        self.dpi = config['plot'].get('dpi', 300)
        self.exclude_patterns = config.get('exclude_patterns')

        self.events = None
        self.membership = None
        self.geometry = {}
        self.template = None
        self.tree = None
        self.labels = None
        self.embedding = None
        self.som = None

    def _save_plot(self, fig, name):
        return save_plot(fig, sanitize_name(name), self.dirs['plots'], dpi=self.dpi)

    def _save_table(self, df, name, index=False):
        return save_results(df, name, self.dirs['tables'], index=index)

    # Section 1: downloads
    def download_data(self, datasets=(), urls=()):
        """Fetch registered datasets and ad-hoc URLs into the data directory"""
        data_dir = resolve_path(self.config, 'data_dir')
        paths = []
        for name in datasets:
            result = fetch_dataset(name, self.config)
            paths.extend(result['files'] + result['archive'])
        for url in urls:
            if url.split('?')[0].lower().endswith('.zip'):
                paths.extend(download_and_extract(url, data_dir))
            else:
                paths.append(download_file(url, data_dir))
        logger.info(f"{len(paths)} files available after downloads")
        return paths

    # Section 2: FCS loading
    def load_fcs_directory(self, fcs_dir, max_events_per_sample=None):
        """Load, compensate and transform every FCS file, then pool the events"""
        transform = self.config['transform']
        method = transform['method']
        samples = []
        for path in find_fcs_files(fcs_dir):
            sample = load_sample(path, compensation=self.config.get('compensation', 'spill'))
            transform_sample(sample, method=method, **transform.get(method, {}))
            samples.append(sample)
        if not samples:
            raise FileNotFoundError(f"No FCS files found in {fcs_dir}")
        self.events = pool_samples(samples, source='xform', subsample=max_events_per_sample,
                                   seed=self.seed)
        return self.events

    # Section 3a: template gating
    def gate_with_template(self, template_path):
        """Gate each sample with a CSV template; write statistics and the hierarchy"""
        self.template = load_gating_template(template_path)
        self.membership, self.geometry = gate_samples(self.events, self.template)

        stats = []
        for sample_id, index in self.events.groupby('sample_id', sort=False).groups.items():
            sample_stats = population_statistics(self.membership.loc[index])
            sample_stats.insert(0, 'sample_id', sample_id)
            stats.append(sample_stats)
        stats = pd.concat(stats, ignore_index=True)
        self._save_table(stats, 'population_statistics.csv')

        counts = self.membership.sum()
        self.tree = tree_from_template(self.template, counts=counts)
        self._write_hierarchy(counts)
        return stats

    # Section 3b: FlowJo workspace gating
    def gate_with_workspace(self, wsp_path, fcs_dir, group_name=None, max_events_per_sample=None):
        """Apply the workspace gates through FlowKit and pool the gated events"""
        from .gating_analysis.workspace import (
            analyze_workspace,
            load_workspace,
            workspace_events,
            workspace_gate_membership
        )

        workspace = load_workspace(wsp_path, fcs_dir)
        report = analyze_workspace(workspace, group_name=group_name)
        self._save_table(report, 'workspace_population_report.csv')

        transform = self.config['transform']
        frames, memberships = [], []
        for sample_id in workspace.get_sample_ids(group_name=group_name):
            events = workspace_events(workspace, sample_id, transform=transform['method'],
                                      **transform.get(transform['method'], {}))
            membership = workspace_gate_membership(workspace, sample_id)
            if max_events_per_sample is not None and len(events) > max_events_per_sample:
                keep = events.sample(n=max_events_per_sample, random_state=self.seed).index.sort_values()
                events, membership = events.loc[keep], membership.loc[keep]
            events = events.assign(sample_id=sample_id)
            frames.append(events.reset_index(drop=True))
            memberships.append(membership.reset_index(drop=True))

        self.events = pd.concat(frames, ignore_index=True)
        self.membership = pd.concat(memberships, ignore_index=True).fillna(False).astype(bool)
        counts = self.membership.sum()
        self.tree = build_gating_tree(self.membership.columns, counts=counts)
        self._write_hierarchy(counts)
        return report

    def _write_hierarchy(self, counts):
        text = render_text_tree(self.tree, counts=counts)
        path = os.path.join(self.dirs['tables'], 'gating_hierarchy.txt')
        with open(path, 'w', encoding='utf-8') as handle:
            handle.write(text + '\n')
        logger.info(f"Gating hierarchy:\n{text}")
        self._save_plot(plot_gating_tree(self.tree), 'gating_hierarchy')

    # Section 4: labels
    def label_cells(self):
        """Attach cell_type / memory_state and write label frequencies"""
        self.labels = label_events(self.events, self.membership, self.config)
        summary = label_summary(self.labels, by=('cell_type', 'memory_state'))
        self._save_table(summary, 'label_summary.csv')

        cell_types = label_summary(self.labels, by=('cell_type',))
        hue = 'sample_id' if 'sample_id' in cell_types.columns else None
        self._save_plot(plot_population_frequencies(cell_types, hue=hue), 'cell_type_frequencies')
        return self.labels

    # Section 5: scatter plots
    def plot_gates(self):
        """One plot per template gate of the first sample, plus labelled scatters"""
        max_events = self.config['plot']['max_events']
        if self.template is not None:
            sample_id = next(iter(self.geometry))
            index = self.events.index if sample_id is None else \
                self.events.index[self.events['sample_id'] == sample_id]
            events = self.events.loc[index]
            membership = self.membership.loc[index]
            for _, row in self.template.iterrows():
                dims = list(row['dims'])
                fig = plot_gate_scatter(
                    events, dims[0], dims[1] if len(dims) > 1 else None,
                    geometry=self.geometry[sample_id][row['path']],
                    parent_mask=membership[row['parent_path']].to_numpy(),
                    max_events=max_events, seed=self.seed,
                    title=f"{row['alias']} ({sample_id})"
                )
                self._save_plot(fig, f"gate_{row['path']}")

        pairs = self.config.get('scatter_pairs') or []
        if not pairs and self.template is not None:
            pairs = [list(d) for d in self.template['dims'] if len(d) == 2]
        if not pairs:
            logger.info("No 2D gates or scatter_pairs configured; no population scatter plots")
            return
        seen = set()
        for x, y in pairs:
            if (x, y) in seen or x not in self.labels.columns or y not in self.labels.columns:
                continue
            seen.add((x, y))
            fig = plot_population_scatter(self.labels, x, y, hue='cell_type',
                                          max_events=max_events, seed=self.seed)
            self._save_plot(fig, f"populations_{x}_vs_{y}")

    # Section 6: UMAP
    def run_embedding(self):
        """UMAP of a per-sample balanced subsample, coloured by labels and channels"""
        params = self.config['umap']
        events = subsample_events(self.labels, params['max_events'], seed=self.seed,
                                  stratify='sample_id')
        self.embedding = run_umap(events, n_neighbors=params['n_neighbors'],
                                  min_dist=params['min_dist'], scale=params['scale'],
                                  random_state=self.seed, exclude_patterns=self.exclude_patterns)
        self._save_table(self.embedding.join(events[['sample_id', 'cell_type', 'memory_state']]),
                         'umap_embedding.csv', index=True)

        for column in ['cell_type', 'memory_state', 'sample_id']:
            self._save_plot(plot_umap(self.embedding, events[column]), f"umap_{column}")
        for channel in select_channels(events, exclude_patterns=self.exclude_patterns):
            self._save_plot(plot_umap(self.embedding, events[channel].astype(float), categorical=False),
                            f"umap_channel_{channel}")
        return self.embedding

    # Section 7: SOM
    def run_som(self):
        """FlowSOM clustering, MST of the SOM nodes and cluster descriptions"""
        from .embedding_analysis.som import (
            build_mst,
            cluster_composition,
            cluster_marker_medians,
            mst_layout,
            run_flowsom
        )

        params = self.config['som']
        events = subsample_events(self.labels, params.get('max_events'), seed=self.seed,
                                  stratify='sample_id')
        self.som = run_flowsom(events, xdim=params['xdim'], ydim=params['ydim'],
                               n_clusters=params['n_clusters'], seed=self.seed,
                               exclude_patterns=self.exclude_patterns)
        tree = build_mst(self.som.codes)
        layout = mst_layout(tree)

        self._save_plot(plot_som_mst(tree, layout, self.som.node_sizes,
                                     node_colours=self.som.node_metaclusters),
                        'som_mst_metaclusters')
        composition = cluster_composition(self.som.clusters, events['cell_type'])
        self._save_plot(plot_som_mst(tree, layout, self.som.node_sizes, composition=composition,
                                     title='SOM nodes by cell type'),
                        'som_mst_cell_types')
        self._save_table(composition, 'som_node_cell_type_composition.csv', index=True)

        medians = cluster_marker_medians(events, self.som.metaclusters,
                                         exclude_patterns=self.exclude_patterns)
        self._save_table(medians, 'metacluster_marker_medians.csv', index=True)
        self._save_plot(plot_marker_heatmap(medians), 'metacluster_marker_heatmap')
        self._save_table(pd.crosstab(self.som.metaclusters, events['cell_type']),
                         'metacluster_cell_types.csv', index=True)
        return self.som

    # Section 8: reports
    def write_reports(self, groups_file=None):
        """Frequency tables, channel summaries and optional group comparison"""
        frequencies = population_frequency_table(self.labels)
        self._save_table(frequencies, 'cell_type_frequencies.csv', index=True)
        channels = select_channels(self.labels, exclude_patterns=self.exclude_patterns)
        self._save_table(channel_summary(self.labels, channels, by='cell_type'),
                         'channel_summary_by_cell_type.csv')

        if groups_file:
            groups_df = load_csv_with_logging(groups_file, required_columns=['sample_id', 'group'])
            groups = groups_df.set_index('sample_id')['group']
            comparison = compare_groups(frequencies, groups)
            self._save_table(comparison, 'cell_type_group_comparison.csv')
            return comparison
        return frequencies


def parse_args(argv=None):
    """Parse command line arguments."""
    parser = argparse.ArgumentParser(description='Run the flow cytometry analysis workflow')

    parser.add_argument('--config', type=str, default=None,
                        help='JSON file overriding the default configuration')
    parser.add_argument('--base-path', type=str, default=None,
                        help='Base path for data and output directories')
    parser.add_argument('--dataset', action='append', default=[],
                        help='Registered dataset to download (repeatable)')
    parser.add_argument('--url', action='append', default=[],
                        help='Extra FCS file or zip archive URL to download (repeatable)')
    parser.add_argument('--fcs-dir', type=str, default=None,
                        help='Directory with FCS files (default: the first dataset\'s directory, '
                             'or its extracted archive)')

    gating = parser.add_mutually_exclusive_group(required=True)
    gating.add_argument('--template', type=str, help='CSV gating template')
    gating.add_argument('--workspace', type=str, help='FlowJo workspace (.wsp)')
    parser.add_argument('--sample-group', type=str, default=None,
                        help='Workspace sample group to analyze')

    parser.add_argument('--max-events-per-sample', type=int, default=None,
                        help='Randomly keep at most this many events per sample')
    parser.add_argument('--groups', type=str, default=None,
                        help='CSV with sample_id,group for frequency comparisons')
    parser.add_argument('--skip-download', action='store_true', help='Do not download anything')
    parser.add_argument('--skip-umap', action='store_true', help='Skip the UMAP section')
    parser.add_argument('--skip-som', action='store_true', help='Skip the SOM section')
    parser.add_argument('--verbose', action='store_true', help='Debug logging')

    return parser.parse_args(argv)


def main(argv=None):
    args = parse_args(argv)
    if args.verbose:
        logging.getLogger().setLevel(logging.DEBUG)

    config = load_config(args.config)
    if args.base_path:
        config['base_path'] = os.path.abspath(args.base_path)

    analysis = FlowAnalysis(config)

    def fcs_dir():
        # resolved after the download section so extracted archives are found
        if args.fcs_dir:
            return args.fcs_dir
        if args.dataset:
            return dataset_fcs_dir(args.dataset[0], config)
        return resolve_path(config, 'data_dir')

    sections = []
    if not args.skip_download and (args.dataset or args.url):
        sections.append(('download', lambda: analysis.download_data(args.dataset, args.url)))
    if args.workspace:
        sections.append(('workspace gating', lambda: analysis.gate_with_workspace(
            args.workspace, fcs_dir(), group_name=args.sample_group,
            max_events_per_sample=args.max_events_per_sample)))
    else:
        sections.append(('load', lambda: analysis.load_fcs_directory(
            fcs_dir(), max_events_per_sample=args.max_events_per_sample)))
        sections.append(('template gating', lambda: analysis.gate_with_template(args.template)))
    sections.append(('labels', analysis.label_cells))
    sections.append(('scatter plots', analysis.plot_gates))
    if not args.skip_umap:
        sections.append(('umap', analysis.run_embedding))
    if not args.skip_som:
        sections.append(('som', analysis.run_som))
    sections.append(('reports', lambda: analysis.write_reports(args.groups)))

    for name, section in sections:
        logger.info(f"=== {name} ===")
        try:
            section()
        except Exception as e:
            logger.error(f"Section '{name}' failed: {e}")
            logger.error(traceback.format_exc())
            return 1

    logger.info(f"Analysis complete; results in {analysis.dirs['output']}")
    return 0


if __name__ == "__main__":
    sys.exit(main())
