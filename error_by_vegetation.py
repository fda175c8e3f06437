"""Absolute UAS DTM error by vegetation class.

Reads a table produced by :mod:`zonal_compilation`, keeps pixels whose
vegetation class survived resampling as a whole number, relabels the five
classes of interest, adds an "All forests" group and draws one boxplot of
absolute error per group with the share of pixels over a height threshold.
"""
from __future__ import annotations

import warnings
from pathlib import Path
from dataclasses import dataclass
from typing import Dict, List, Tuple

import numpy as np
import pandas as pd
import matplotlib.pyplot as plt
from scipy import stats

from zonal_compilation import read_compiled_data


VEG_CLASS_LABELS: Dict[int, str] = {
    2: 'Grass',
    3: 'Shrub',
    6: 'Deciduous\nbroadleaf\nforest',
    7: 'Evergreen\nbroadleaf\nforest',
    8: 'Conifer\nforest',
}
FOREST_CLASSES = (6, 7, 8)
ALL_FORESTS = 'All forests'
CATEGORY_ORDER: List[str] = [
    'Grass',
    'Shrub',
    'Conifer\nforest',
    'Evergreen\nbroadleaf\nforest',
    'Deciduous\nbroadleaf\nforest',
    ALL_FORESTS,
]
CATEGORY_COLORS = ['#DDCC77', '#CC6677', '#117733', '#332288', '#88CCEE', 'white']

# Fractional distance from a whole number still accepted as a class value
CLASS_TOLERANCE = 0.05

PLOT_STYLE = {
    'font.family': 'serif',
    'axes.labelsize': 16,
    'xtick.labelsize': 14,
    'ytick.labelsize': 14,
    'axes.linewidth': 1,
    'lines.linewidth': 1,
    'axes.spines.top': False,
    'axes.spines.right': False,
}


@dataclass
class PlotSettings:
    """Threshold and output settings for the vegetation-class boxplot."""

    height_threshold: float = 4.0
    figsize: Tuple[float, float] = (6.5, 4.5)
    dpi: int = 700
    figure: Path | str = 'figures/fig4_dtm_error_by_veg_class.png'


# ----------------------------------------------------------------------
# Data preparation
# ----------------------------------------------------------------------
def near_integer_mask(values: pd.Series, tolerance: float = CLASS_TOLERANCE) -> pd.Series:
    """Return True where ``values`` lie within ``tolerance`` of a whole number.

    NaN values are never accepted.
    """
    frac = values % 1
    return (frac < tolerance) | (frac > 1 - tolerance)


def prepare_plot_data(compiled: pd.DataFrame) -> pd.DataFrame:
    """Build the plot table of absolute UAS error by vegetation category.

    Parameters
    ----------
    compiled : pandas.DataFrame
        Compiled zonal table holding at least ``veg_class`` and ``uas_error``.

    Returns
    -------
    pandas.DataFrame
        Rows with an ``abs_uas_error`` column and ``veg_class`` as an ordered
        categorical. Rows from the three forest classes appear twice, once
        under their own label and once under "All forests".
    """
    df = compiled.copy()
    df['abs_uas_error'] = df['uas_error'].abs()
    df = df[df['abs_uas_error'].notna()]
    df = df[near_integer_mask(df['veg_class'])].copy()
    df['veg_class'] = df['veg_class'].round().astype(int)
    df = df[df['veg_class'].isin(list(VEG_CLASS_LABELS))]

    forests = df[df['veg_class'].isin(FOREST_CLASSES)].copy()
    df['veg_class'] = df['veg_class'].map(VEG_CLASS_LABELS)
    forests['veg_class'] = ALL_FORESTS

    plot_data = pd.concat([df, forests], ignore_index=True)
    plot_data['veg_class'] = pd.Categorical(plot_data['veg_class'], categories=CATEGORY_ORDER, ordered=True)
    return plot_data


# ----------------------------------------------------------------------
# Statistics
# ----------------------------------------------------------------------
def upper_outlier_limit(values: np.ndarray) -> float:
    """Return ``Q3 + 1.5 * IQR`` using linearly interpolated quantiles."""
    q1, q3 = np.percentile(values, [25, 75])
    return q3 + 1.5 * (q3 - q1)


def outlier_summary(plot_data: pd.DataFrame, height_threshold: float = 4.0) -> pd.DataFrame:
    """Count upper-tail outliers and threshold exceedances per vegetation category.

    Percentages are rounded to whole percent. ``max`` is the largest error
    plus one and is used to place the percentage label above each box.
    """
    records = []
    for category, group in plot_data.groupby('veg_class', observed=True):
        values = group['abs_uas_error'].to_numpy(dtype=float)
        n = values.size
        n_outlier = int(np.sum(values > upper_outlier_limit(values)))
        n_gtthreshold = int(np.sum(values > height_threshold))
        records.append({
            'veg_class': category,
            'n': n,
            'n_outlier': n_outlier,
            'p_outlier': np.round(n_outlier / n, 2) * 100,
            'n_gtthreshold': n_gtthreshold,
            'p_gtthreshold': np.round(n_gtthreshold / n, 2) * 100,
            'max': float(np.max(values)) + 1,
        })
    return pd.DataFrame.from_records(
        records, columns=['veg_class', 'n', 'n_outlier', 'p_outlier', 'n_gtthreshold', 'p_gtthreshold', 'max']
    ).set_index('veg_class')


def descriptive_stats(values: np.ndarray) -> pd.DataFrame:
    """
    Compute descriptive statistics for a 1D array of values.
    Returns a one-row DataFrame.
    """
    data = values[~np.isnan(values)]
    cols = ['count', 'mean', 'median', 'std', 'min', 'max',
            'skewness', 'kurtosis', '0.5_percentile', '99.5_percentile']
    if data.size == 0:
        return pd.DataFrame([{c: (0 if c == 'count' else np.nan) for c in cols}])
    p_low, p_high = np.percentile(data, [0.5, 99.5])
    return pd.DataFrame([{
        'count': int(data.size),
        'mean': float(np.mean(data)),
        'median': float(np.median(data)),
        'std': float(np.std(data)),
        'min': float(np.min(data)),
        'max': float(np.max(data)),
        'skewness': float(stats.skew(data)),
        'kurtosis': float(stats.kurtosis(data)),
        '0.5_percentile': float(p_low),
        '99.5_percentile': float(p_high),
    }])


def category_error_stats(plot_data: pd.DataFrame) -> pd.DataFrame:
    """Descriptive statistics of absolute error for each vegetation category."""
    records: List[pd.DataFrame] = []
    for category, group in plot_data.groupby('veg_class', observed=True):
        df = descriptive_stats(group['abs_uas_error'].to_numpy(dtype=float))
        df['veg_class'] = category
        records.append(df)
    if not records:
        return pd.DataFrame()
    return pd.concat(records, ignore_index=True).set_index('veg_class')


# ----------------------------------------------------------------------
# Plotting
# ----------------------------------------------------------------------
def y_breaks(height_threshold: float) -> List[float]:
    """Return the sorted, de-duplicated y-axis breaks including the threshold."""
    return sorted({0.0, float(height_threshold), 10.0, 20.0, 30.0, 40.0})


def plot_error_by_veg_class(
    plot_data: pd.DataFrame,
    *,
    settings: PlotSettings | None = None,
    summary: pd.DataFrame | None = None,
    save_path: Path | str | None = None,
) -> plt.Figure:
    """Draw one boxplot of absolute UAS error per vegetation category.

    A dashed line marks the height threshold and each box is labelled with
    the percentage of pixels above it.

    Parameters
    ----------
    plot_data : pandas.DataFrame
        Output of :func:`prepare_plot_data`.
    settings : PlotSettings, optional
        Threshold, figure size and resolution. Defaults to
        :class:`PlotSettings`.
    summary : pandas.DataFrame, optional
        Output of :func:`outlier_summary`; computed when omitted.
    save_path : str or pathlib.Path, optional
        Where to write the figure. Nothing is written when ``None``.

    Returns
    -------
    matplotlib.figure.Figure
    """
    settings = settings or PlotSettings()
    if summary is None:
        summary = outlier_summary(plot_data, settings.height_threshold)

    present, data = [], []
    for category in CATEGORY_ORDER:
        values = plot_data.loc[plot_data['veg_class'] == category, 'abs_uas_error'].to_numpy(dtype=float)
        if values.size == 0:
            label = category.replace('\n', ' ')
            warnings.warn(f"No pixels for category '{label}'; box omitted.")
            continue
        present.append(category)
        data.append(values)
    positions = list(range(1, len(present) + 1))

    with plt.rc_context(PLOT_STYLE):
        fig, ax = plt.subplots(figsize=settings.figsize)
        ax.axhline(settings.height_threshold, color='grey', linewidth=1, linestyle='dashed', zorder=0)
        if data:
            bp = ax.boxplot(
                data,
                positions=positions,
                widths=0.75,
                patch_artist=True,
                medianprops={'color': 'black'},
                flierprops={'marker': 'o', 'markersize': 3, 'markerfacecolor': 'black'},
            )
            # Palette follows the order of the categories that are drawn
            for patch, color in zip(bp['boxes'], CATEGORY_COLORS):
                patch.set_facecolor(color)
                patch.set_edgecolor('black')

        label_top = 0.0
        for category, row in summary.iterrows():
            if category not in present:
                continue
            x = present.index(category) + 1
            ax.text(x, row['max'], f"{row['p_gtthreshold']:g}%", ha='center', va='bottom', fontsize=14)
            label_top = max(label_top, row['max'])

        ax.set_xticks(positions)
        ax.set_xticklabels(present)
        ax.set_xlim(0.4, len(present) + 0.6)

        # Ticks mark fixed breaks only; the range stays data driven
        bottom, top = ax.get_ylim()
        bottom = min(bottom, 0.0)
        top = max(top, label_top * 1.08)
        ax.set_yticks([t for t in y_breaks(settings.height_threshold) if bottom <= t <= top])
        ax.set_ylim(bottom, top)
        ax.set_ylabel('UAS-SfM DTM absolute error (m)')
        fig.tight_layout()

        if save_path is not None:
            save_path = Path(save_path)
            save_path.parent.mkdir(parents=True, exist_ok=True)
            fig.savefig(save_path, dpi=settings.dpi)
    return fig


def run_analysis(compiled_csv: Path | str, settings: PlotSettings | None = None) -> pd.DataFrame:
    """Reload a compiled table, write the figure and per-category stats.

    Returns
    -------
    pandas.DataFrame
        The outlier summary, one row per plotted category.
    """
    settings = settings or PlotSettings()
    plot_data = prepare_plot_data(read_compiled_data(compiled_csv))
    summary = outlier_summary(plot_data, settings.height_threshold)

    figure_path = Path(settings.figure)
    fig = plot_error_by_veg_class(plot_data, settings=settings, summary=summary, save_path=figure_path)
    plt.close(fig)
    print(f"Figure written to {figure_path}")

    stats_path = figure_path.with_name(f"{figure_path.stem}_stats.csv")
    category_error_stats(plot_data).join(summary.drop(columns='max')).to_csv(stats_path)
    print(f"Category statistics written to {stats_path}")
    return summary
