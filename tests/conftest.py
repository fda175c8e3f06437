from __future__ import annotations

from pathlib import Path

import matplotlib
matplotlib.use('Agg')

import numpy as np
import pytest
import rasterio
import geopandas as gpd
from rasterio.transform import from_origin
from shapely.geometry import box

from zonal_compilation import CompilationInputs


CRS = 'EPSG:32610'
NODATA = -9999.0
X0, Y0 = 500000.0, 4260000.0


def write_tif(path: Path, array: np.ndarray, res: float = 1.0, nodata: float | None = NODATA) -> Path:
    """Write a single-band float32 GeoTIFF anchored at (X0, Y0)."""
    path.parent.mkdir(parents=True, exist_ok=True)
    with rasterio.open(
        path, 'w',
        driver='GTiff',
        height=array.shape[0],
        width=array.shape[1],
        count=1,
        dtype='float32',
        crs=CRS,
        transform=from_origin(X0, Y0, res, res),
        nodata=nodata,
    ) as dst:
        dst.write(array.astype('float32'), 1)
    return path


def uas_grid() -> np.ndarray:
    return np.arange(36, dtype=float).reshape(6, 6) + 100


def veg_grid() -> np.ndarray:
    """3 x 3 vegetation classes at 2 m covering the 6 x 6 terrain grid."""
    return np.array([[2, 3, 6], [7, 8, 1], [2, 6, 8]], dtype=float)


@pytest.fixture
def zone_layers(tmp_path):
    """Rasters and boundaries for two zones on the same 6 x 6, 1 m grid.

    Zone 1 covers the 3 x 3 block at rows/cols 1-3; its UAS DTM has nodata at
    (2, 2) and its ALS DTM has nodata at (1, 1). Zone 2 covers the whole grid
    but its UAS DTM holds a single valid cell at (4, 5).
    """
    root = tmp_path / 'data'
    for z in (1, 2):
        uas = uas_grid()
        als = uas - 0.5
        if z == 1:
            uas[2, 2] = NODATA
            als[1, 1] = NODATA
        else:
            single = np.full((6, 6), NODATA)
            single[4, 5] = uas[4, 5]
            uas = single
        write_tif(root / f'uas_z{z}.tif', uas)
        write_tif(root / f'als_z{z}.tif', als)
        write_tif(root / f'uas_smooth_z{z}.tif', uas_grid() + 0.25)
        write_tif(root / f'veg_z{z}.tif', veg_grid(), res=2.0, nodata=0)
        write_tif(root / f'rbr_z{z}.tif', np.full((6, 6), z + 1.0), nodata=0)
        write_tif(root / f'topo_z{z}.tif', np.tile(np.arange(1, 7, dtype=float), (6, 1)), nodata=0)

    zones = gpd.GeoDataFrame(
        {'Zone': [1, 2]},
        geometry=[box(X0 + 1, Y0 - 4, X0 + 4, Y0 - 1), box(X0, Y0 - 6, X0 + 6, Y0)],
        crs=CRS,
    )
    zones.to_file(root / 'zones.gpkg', driver='GPKG')
    return root


@pytest.fixture
def inputs(zone_layers, tmp_path):
    return CompilationInputs(
        zones=[1, 2],
        zone_shp_file=zone_layers / 'zones.gpkg',
        uas_dtm_file=str(zone_layers / 'uas_z{z}.tif'),
        als_dtm_file=str(zone_layers / 'als_z{z}.tif'),
        uas_dtm_smooth_file=str(zone_layers / 'uas_smooth_z{z}.tif'),
        veg_file=str(zone_layers / 'veg_z{z}.tif'),
        rbr_file=str(zone_layers / 'rbr_z{z}.tif'),
        topo_file=str(zone_layers / 'topo_z{z}.tif'),
        output=tmp_path / 'out' / 'compiled.csv',
        terrain_resampling='nearest',
        class_resampling='nearest',
    )
