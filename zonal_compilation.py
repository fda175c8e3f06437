"""Compile per-pixel UAS and ALS terrain values for a set of survey zones.

For every zone the UAS DTM is clipped to the zone boundary and trimmed to its
valid data, the ALS DTM, smoothed UAS DTM and the three classification layers
(vegetation, burn severity, topography) are resampled onto that grid, and the
stack is flattened into one table row per valid pixel. After all zones are
compiled the UAS error columns are added and the table is written to CSV.

Classification codes carried through the table:

- vegetation: 1 human, 2 grassland, 3 shrubland, 4 water, 5 wet herbaceous,
  6 deciduous broadleaf, 7 evergreen broadleaf, 8 conifer
- RBR burn severity: 1 unburned, 2 low, 3 medium, 4 high
- topography: 1 valley, 2/4/5 slope, 3 flat, 6 ridge
"""
from __future__ import annotations

import warnings
from pathlib import Path
from dataclasses import dataclass, field
from typing import Dict, List, Sequence, Tuple

import numpy as np
import pandas as pd
import xarray as xr
import rioxarray as rio
import geopandas as gpd
from rasterio.enums import Resampling
from rasterio.windows import Window, transform as window_transform
from shapely.ops import unary_union


LAYER_NAMES = ('uas_dtm', 'als_dtm', 'uas_dtm_smooth', 'veg_class', 'rbr_class', 'topo_class')
CLASS_LAYERS = ('veg_class', 'rbr_class', 'topo_class')
COMPILED_COLUMNS = ['zone', *LAYER_NAMES]
OUTPUT_COLUMNS = COMPILED_COLUMNS + ['uas_error', 'uas_smooth_error']


# ----------------------------------------------------------------------
# Configuration
# ----------------------------------------------------------------------
@dataclass
class CompilationInputs:
    """File layout and resampling choices for the zonal compilation.

    Every template holds a ``{z}`` placeholder that is replaced by the zone
    number. Defaults follow the 2019 Pepperwood survey layout.
    """

    zones: Sequence[int] = field(default_factory=lambda: [2, 3, 4, *range(6, 14)])
    zone_shp_file: Path | str = 'data/site_data/zone_shp/ppwd_zones_50m-buffer.shp'
    zone_field: str = 'Zone'
    uas_dtm_file: str = 'data/dtm/uas/ppwd_uas_z{z}_f2_dtm.tif'
    als_dtm_file: str = 'data/dtm/als/ppwd_als_z{z}_dtm.tif'
    uas_dtm_smooth_file: str = 'data/dtm/uas/ppwd_uas_z{z}_f2_dtm-smooth.tif'
    veg_file: str = 'data/site_data/veg_class/zone/ppwd_veg_z{z}.tif'
    rbr_file: str = 'data/site_data/tubbs17_rbr/zone/ppwd_tubbs17_rbr_z{z}.tif'
    topo_file: str = 'data/site_data/topography/zone/ppwd_topo_z{z}.tif'
    output: Path | str = 'data/dtm/ppwd_uas-dtm-gen_compiled-data.csv'
    terrain_resampling: str = 'bilinear'
    class_resampling: str = 'nearest'

    @property
    def templates(self) -> Dict[str, str]:
        """Return the path template of each layer, keyed by column name."""
        return {
            'uas_dtm': self.uas_dtm_file,
            'als_dtm': self.als_dtm_file,
            'uas_dtm_smooth': self.uas_dtm_smooth_file,
            'veg_class': self.veg_file,
            'rbr_class': self.rbr_file,
            'topo_class': self.topo_file,
        }

    def resampling_for(self, layer: str) -> Resampling:
        """Return the resampling method used to bring ``layer`` onto the reference grid."""
        name = self.class_resampling if layer in CLASS_LAYERS else self.terrain_resampling
        return Resampling[name]

    def validate(self) -> "CompilationInputs":
        """Check the configuration and return it.

        Raises
        ------
        ValueError
            If no zones are given, a template lacks the ``{z}`` placeholder,
            or a resampling name is not a :class:`rasterio.enums.Resampling`
            member.
        """
        if len(self.zones) == 0:
            raise ValueError("At least one zone must be given.")
        for layer, template in self.templates.items():
            if '{z}' not in str(template):
                raise ValueError(f"Template for {layer} has no '{{z}}' placeholder: {template}")
        for name in (self.terrain_resampling, self.class_resampling):
            if name not in Resampling.__members__:
                raise ValueError(f"Unknown resampling method: {name}")
        return self


# ----------------------------------------------------------------------
# Raster helpers
# ----------------------------------------------------------------------
@dataclass
class Raster:
    """Lazy wrapper around a single-band raster file."""

    path: Path | str
    _data: xr.DataArray | None = None

    def __post_init__(self):
        self.path = Path(self.path)
        if not self.path.exists():
            raise FileNotFoundError(self.path)

    @property
    def data(self):
        """Return the first band as a 2-D masked :class:`rioxarray.DataArray`.

        Nodata cells are converted to NaN. The array is read on first access
        and cached afterwards.
        """
        if self._data is None:
            da = rio.open_rasterio(self.path, masked=True)
            if "band" in da.dims:
                da = da.isel(band=0, drop=True)
            self._data = da
        return self._data

    @property
    def shape(self) -> Tuple[int, int]:
        """Return the (row, column) dimensions of the raster."""
        return self.data.shape

    @property
    def crs(self):
        return self.data.rio.crs

    def clip_and_trim(self, geometries, crs) -> xr.DataArray:
        """Mask the raster outside ``geometries`` and trim to the valid extent.

        Cells whose centres fall outside the geometries become NaN, then rows
        and columns holding no valid cell are removed from the edges.

        Parameters
        ----------
        geometries : list of shapely geometries
            Clip boundary.
        crs : any
            CRS of ``geometries``; reprojected to the raster CRS if needed.

        Returns
        -------
        rioxarray.DataArray
            The clipped and trimmed grid with an updated transform.
        """
        clipped = self.data.rio.clip(geometries, crs=crs, drop=True)
        return trim(clipped)

    def resample_to(self, reference: xr.DataArray, resampling: Resampling = Resampling.nearest) -> xr.DataArray:
        """Resample this raster onto the exact grid of ``reference``."""
        return self.data.rio.reproject_match(reference, resampling=resampling)


def trim(da: xr.DataArray) -> xr.DataArray:
    """Remove outer rows and columns that hold only NaN.

    Parameters
    ----------
    da : rioxarray.DataArray
        2-D (y, x) grid.

    Returns
    -------
    rioxarray.DataArray
        The smallest window containing every valid cell. If the grid has no
        valid cell it is returned unchanged.
    """
    valid = np.isfinite(da.values)
    if not valid.any():
        warnings.warn("Raster has no valid cells; nothing to trim.")
        return da
    rows, cols = np.where(valid)
    r0, r1 = int(rows.min()), int(rows.max() + 1)
    c0, c1 = int(cols.min()), int(cols.max() + 1)
    window = Window(c0, r0, c1 - c0, r1 - r0)
    trimmed = da.isel(y=slice(r0, r1), x=slice(c0, c1))
    return trimmed.rio.write_transform(window_transform(window, da.rio.transform()))


# ----------------------------------------------------------------------
# Zone boundaries
# ----------------------------------------------------------------------
class ZoneBoundaries:
    """Polygon layer holding one boundary feature per zone."""

    def __init__(self, path: Path | str, zone_field: str = 'Zone'):
        self.path = Path(path)
        if not self.path.exists():
            raise FileNotFoundError(self.path)
        self.zone_field = zone_field
        self._gdf: gpd.GeoDataFrame | None = None

    @property
    def gdf(self) -> gpd.GeoDataFrame:
        if self._gdf is None:
            if self.path.suffix.lower() == '.zip':
                gdf = gpd.read_file(f"zip://{self.path}")
            else:
                gdf = gpd.read_file(self.path)
            if self.zone_field not in gdf.columns:
                raise ValueError(f"Field '{self.zone_field}' not found in {self.path.name}")
            self._gdf = gdf[~gdf.geometry.isna()]
        return self._gdf

    @property
    def crs(self):
        return self.gdf.crs

    def geometry(self, zone: int) -> list:
        """Return the boundary of ``zone`` as a one-element geometry list.

        Raises
        ------
        ValueError
            If no feature carries the zone number.
        """
        matches = self.gdf[self.gdf[self.zone_field] == zone]
        if matches.empty:
            raise ValueError(f"No feature with {self.zone_field} == {zone} in {self.path.name}")
        if len(matches) > 1:
            warnings.warn(f"{len(matches)} features found for zone {zone}; dissolving them into one boundary.")
            return [unary_union(list(matches.geometry))]
        return [matches.geometry.iloc[0]]


# ----------------------------------------------------------------------
# Zone alignment
# ----------------------------------------------------------------------
@dataclass
class AlignedZone:
    """Six co-registered grids for one zone, keyed by column name."""

    zone: int
    layers: Dict[str, xr.DataArray]

    @property
    def shape(self) -> Tuple[int, int]:
        return self.layers['uas_dtm'].shape


class ZoneRasterAligner:
    """Clip the UAS DTM to a zone and resample the other layers onto it."""

    def __init__(self, inputs: CompilationInputs, boundaries: ZoneBoundaries):
        self.inputs = inputs
        self.boundaries = boundaries

    def paths(self, zone: int) -> Dict[str, Path]:
        """Render every layer template for ``zone``."""
        return {layer: Path(template.format(z=zone)) for layer, template in self.inputs.templates.items()}

    def align(self, zone: int) -> AlignedZone:
        """Load and co-register the six layers of ``zone``.

        Returns
        -------
        AlignedZone
            Layers sharing the CRS, transform and shape of the clipped and
            trimmed UAS DTM.
        """
        geometries = self.boundaries.geometry(zone)
        rasters = {layer: Raster(path) for layer, path in self.paths(zone).items()}

        reference = rasters['uas_dtm'].clip_and_trim(geometries, self.boundaries.crs)
        layers = {'uas_dtm': reference}
        for layer in LAYER_NAMES[1:]:
            layers[layer] = rasters[layer].resample_to(reference, self.inputs.resampling_for(layer))
        return AlignedZone(zone=zone, layers=layers)


# ----------------------------------------------------------------------
# Tabular compilation
# ----------------------------------------------------------------------
def compile_zone_table(aligned: AlignedZone) -> pd.DataFrame:
    """Flatten an aligned zone into one row per pixel with a defined UAS DTM.

    Pixels are listed in row-major scan order.
    """
    columns = {'zone': np.full(int(np.prod(aligned.shape)), aligned.zone, dtype=int)}
    for layer in LAYER_NAMES:
        columns[layer] = np.asarray(aligned.layers[layer].values, dtype=float).ravel()
    df = pd.DataFrame(columns, columns=COMPILED_COLUMNS)
    return df[df['uas_dtm'].notna()].reset_index(drop=True)


def add_error_columns(df: pd.DataFrame) -> pd.DataFrame:
    """Return a copy of ``df`` with UAS and smoothed-UAS error against the ALS DTM."""
    out = df.copy()
    out['uas_error'] = out['uas_dtm'] - out['als_dtm']
    out['uas_smooth_error'] = out['uas_dtm_smooth'] - out['als_dtm']
    return out


def read_compiled_data(path: Path | str) -> pd.DataFrame:
    """Read a compiled table written by :meth:`ZonalDataCompiler.write`.

    Raises
    ------
    ValueError
        If any expected column is missing.
    """
    df = pd.read_csv(path)
    missing = [c for c in OUTPUT_COLUMNS if c not in df.columns]
    if missing:
        raise ValueError(f"{Path(path).name} is missing columns: {', '.join(missing)}")
    df['zone'] = df['zone'].astype(int)
    return df[OUTPUT_COLUMNS]


class ZonalDataCompiler:
    """Run the zone loop and persist the compiled table."""

    def __init__(self, inputs: CompilationInputs):
        self.inputs = inputs.validate()
        self.boundaries = ZoneBoundaries(inputs.zone_shp_file, inputs.zone_field)
        self.aligner = ZoneRasterAligner(inputs, self.boundaries)
        self.compiled_data: pd.DataFrame | None = None

    def compile(self) -> pd.DataFrame:
        """Compile every zone in order and add the error columns."""
        tables: List[pd.DataFrame] = []
        for zone in self.inputs.zones:
            print(f"Compiling zone {zone}...")
            aligned = self.aligner.align(zone)
            zone_data = compile_zone_table(aligned)
            if zone_data.empty:
                warnings.warn(f"Zone {zone} has no valid UAS DTM cells inside its boundary.")
            print(f"   - {len(zone_data):,} valid cells on a {aligned.shape[0]} x {aligned.shape[1]} grid")
            tables.append(zone_data)
        compiled = pd.concat(tables, ignore_index=True) if tables else pd.DataFrame(columns=COMPILED_COLUMNS)
        self.compiled_data = add_error_columns(compiled)
        return self.compiled_data

    def write(self, path: Path | str | None = None) -> Path:
        """Write the compiled table to CSV, compiling first if needed."""
        if self.compiled_data is None:
            self.compile()
        out = Path(path if path is not None else self.inputs.output)
        out.parent.mkdir(parents=True, exist_ok=True)
        self.compiled_data[OUTPUT_COLUMNS].to_csv(out, index=False, na_rep='NA')
        print(f"Compiled data written to {out}")
        return out
