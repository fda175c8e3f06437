"""Command-line entry point for the UAS DTM error workflow.

Stages
------
compile
    Build the zonal table from the zone boundaries and per-zone rasters.
plot
    Reload a compiled table and draw the error-by-vegetation figure.
all
    Run both stages in order.
"""
from __future__ import annotations

import argparse
from typing import Optional, Sequence

from rasterio.enums import Resampling

from zonal_compilation import CompilationInputs, ZonalDataCompiler
from error_by_vegetation import PlotSettings, run_analysis


EXAMPLES = """
Examples:
  python dtm_error_workflow.py compile --zones 2 3 4
  python dtm_error_workflow.py plot --output data/dtm/compiled.csv --figure figures/fig4.png
  python dtm_error_workflow.py all --class-resampling bilinear
"""


def build_parser() -> argparse.ArgumentParser:
    defaults = CompilationInputs()
    plot_defaults = PlotSettings()
    resampling_names = sorted(Resampling.__members__)

    parser = argparse.ArgumentParser(
        description='Compile UAS and ALS DTM values per zone and plot absolute error by vegetation class',
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=EXAMPLES,
    )
    parser.add_argument('stage', choices=['compile', 'plot', 'all'], help='Workflow stage to run')
    parser.add_argument('--zones', type=int, nargs='+', default=list(defaults.zones), help='Zone numbers, in processing order')
    parser.add_argument('--zone-shp', default=str(defaults.zone_shp_file), help='Zone boundary polygons')
    parser.add_argument('--zone-field', default=defaults.zone_field, help='Attribute holding the zone number')
    parser.add_argument('--uas-dtm', default=defaults.uas_dtm_file, help='UAS DTM template ({z} = zone)')
    parser.add_argument('--als-dtm', default=defaults.als_dtm_file, help='ALS DTM template ({z} = zone)')
    parser.add_argument('--uas-dtm-smooth', default=defaults.uas_dtm_smooth_file, help='Smoothed UAS DTM template ({z} = zone)')
    parser.add_argument('--veg', default=defaults.veg_file, help='Vegetation class template ({z} = zone)')
    parser.add_argument('--rbr', default=defaults.rbr_file, help='RBR burn severity template ({z} = zone)')
    parser.add_argument('--topo', default=defaults.topo_file, help='Topography class template ({z} = zone)')
    parser.add_argument('--terrain-resampling', default=defaults.terrain_resampling, choices=resampling_names,
                        help='Resampling for the ALS and smoothed UAS DTMs')
    parser.add_argument('--class-resampling', default=defaults.class_resampling, choices=resampling_names,
                        help='Resampling for the classification layers')
    parser.add_argument('--output', default=str(defaults.output), help='Compiled CSV (written by compile, read by plot)')
    parser.add_argument('--figure', default=str(plot_defaults.figure), help='Output figure path')
    parser.add_argument('--threshold', type=float, default=plot_defaults.height_threshold, help='Absolute error threshold (m)')
    parser.add_argument('--dpi', type=int, default=plot_defaults.dpi, help='Figure resolution')
    return parser


def inputs_from_args(args: argparse.Namespace) -> CompilationInputs:
    return CompilationInputs(
        zones=args.zones,
        zone_shp_file=args.zone_shp,
        zone_field=args.zone_field,
        uas_dtm_file=args.uas_dtm,
        als_dtm_file=args.als_dtm,
        uas_dtm_smooth_file=args.uas_dtm_smooth,
        veg_file=args.veg,
        rbr_file=args.rbr,
        topo_file=args.topo,
        output=args.output,
        terrain_resampling=args.terrain_resampling,
        class_resampling=args.class_resampling,
    ).validate()


def main(argv: Optional[Sequence[str]] = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)

    if args.stage in ('compile', 'all'):
        try:
            inputs = inputs_from_args(args)
        except ValueError as e:
            parser.error(str(e))
        ZonalDataCompiler(inputs).write()

    if args.stage in ('plot', 'all'):
        settings = PlotSettings(height_threshold=args.threshold, dpi=args.dpi, figure=args.figure)
        summary = run_analysis(args.output, settings)
        print(summary.to_string())
    return 0


if __name__ == '__main__':
    raise SystemExit(main())
