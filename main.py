from argparse import ArgumentParser
from collections.abc import Sequence
import csv
import logging
import sys
from typing import Optional, TextIO

import numpy as np

from GeoDbscan import DBSCAN_OUTLIER_INDEX, BruteForceDbscan, Dbscan, DbscanSettings, KDTreeDbscan, Point, PointId, PointList


logger = logging.getLogger(__name__)

CsvRecords = list[list[str]]


class Args:
    inputPath: str
    outputPath: Optional[str]
    eps: float
    minPts: int
    index: str
    debug: bool

    # Static
    indexImplementations: dict[str, type[Dbscan]] = {
        'kdtree': KDTreeDbscan,
        'bruteforce': BruteForceDbscan,
    }

    def __init__(
        self,
        *,
        inputPath: str = 'points.csv',
        outputPath: Optional[str] = None,
        eps: float = DbscanSettings.defaultEpsilon,
        minPts: int = DbscanSettings.defaultNumberOfPoints,
        index: str = 'kdtree',
        debug: bool = False
    ) -> None:
        self.inputPath = inputPath
        self.outputPath = outputPath
        self.eps = eps
        self.minPts = minPts
        self.index = index
        self.debug = debug

    @property
    def dbscanClass(self) -> type[Dbscan]:
        return self.indexImplementations[self.index]


class ArgsParser:
    args: Args
    _parser: ArgumentParser

    def __init__(self) -> None:
        self.args = Args()
        self._parser = ArgumentParser(prog="geo-dbscan", description="DBSCAN geo point clustering tool")

        self._parser.add_argument('-i', '--input', metavar='<path>', default=self.args.inputPath,
                                  help=f'Input CSV file with latitude,longitude columns (default: {self.args.inputPath})')
        self._parser.add_argument('-o', '--output', metavar='<path>',
                                  help='Output CSV file with filtered points (default: stdout)')

        self._parser.add_argument('-e', '--eps', metavar='<eps>', type=float, default=self.args.eps,
                                  help=f'Clustering radius in km (default: {self.args.eps})')
        self._parser.add_argument('-m', '--min-points', metavar='<minPts>', type=int, default=self.args.minPts,
                                  help=f'Minimum number of points in eps-neighbourhood, the point itself included (default: {self.args.minPts})')
        self._parser.add_argument('--index', choices=sorted(Args.indexImplementations), default=self.args.index,
                                  help=f'Neighbour search implementation (default: {self.args.index})')
        self._parser.add_argument('-d', '--debug', action='store_true',
                                  help='Enable debug output')

    def parse(self, argv: Optional[Sequence[str]] = None):
        namespace = self._parser.parse_args(argv)

        if not namespace.eps > 0:
            self._parser.error(f"argument -e/--eps: must be positive, got {namespace.eps}")
        if namespace.min_points < 1:
            self._parser.error(f"argument -m/--min-points: must be at least 1, got {namespace.min_points}")

        self.args.inputPath = namespace.input
        self.args.outputPath = namespace.output
        self.args.eps = namespace.eps
        self.args.minPts = namespace.min_points
        self.args.index = namespace.index
        self.args.debug = namespace.debug

        return namespace


class IOHelper:
    # Static
    separator = ","

    @staticmethod
    def isNumber(value: str) -> bool:
        try:
            float(value)
        except ValueError:
            return False
        return True

    @classmethod
    def readPointsAndCsv(cls, path: str) -> tuple[PointList, Optional[list[str]], CsvRecords]:
        """Reads ``latitude,longitude[,...]`` rows; a header row is optional.

        ``records[i]`` is the raw row ``points[i]`` was parsed from.
        """
        with open(path, newline='', encoding='utf-8') as f:
            rows = [row for row in csv.reader(f, delimiter=cls.separator) if row]

        points: PointList = []
        records: CsvRecords = []
        if not rows:
            return points, None, records

        header = None
        if not cls.isNumber(rows[0][0]):
            header = rows[0]
            rows = rows[1:]

        for row in rows:
            if len(row) < 2:
                continue
            try:
                lat = float(row[0])
                lon = float(row[1])
            except ValueError:
                logger.debug("Skipping unparseable row %s", row)
                continue
            points.append(Point((lon, lat)))
            records.append(row)

        return points, header, records

    @classmethod
    def writeFilteredPointsToCsv(cls, path: str, header: Optional[list[str]], records: CsvRecords, filteredIndices: Sequence[PointId]) -> None:
        with open(path, 'w', newline='', encoding='utf-8') as f:
            writer = csv.writer(f, delimiter=cls.separator)
            if header is not None:
                writer.writerow(header)
            for i in sorted(filteredIndices):
                writer.writerow(records[i])

    @classmethod
    def writeFilteredPointsToStdout(cls, records: CsvRecords, filteredIndices: Sequence[PointId], out: Optional[TextIO] = None) -> None:
        out = sys.stdout if out is None else out
        for i in sorted(filteredIndices):
            out.write(f"{records[i][0]}{cls.separator}{records[i][1]}\n")


class LabelHelper:
    @staticmethod
    def filterPoints(points: Sequence[Point], labels: np.ndarray) -> list[PointId]:
        """Keeps outliers and the first point of every run of equal labels.

        Points whose coordinates were already kept are skipped.
        """
        filtered: list[PointId] = []
        added: set[Point] = set()

        for idx, label in enumerate(labels):
            point = points[idx]
            if point in added:
                continue

            if label == DBSCAN_OUTLIER_INDEX or idx == 0 or label != labels[idx - 1]:
                filtered.append(idx)
                added.add(point)

        return filtered


def main(argv: Optional[Sequence[str]] = None) -> None:
    argsParser = ArgsParser()
    argsParser.parse(argv)
    args = argsParser.args

    logging.basicConfig(
        level=logging.DEBUG if args.debug else logging.WARNING,
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
        stream=sys.stderr
    )

    try:
        points, header, records = IOHelper.readPointsAndCsv(args.inputPath)
    except (OSError, UnicodeDecodeError, csv.Error) as e:
        logger.error("Error reading CSV: %s", e)
        sys.exit(1)

    if not points:
        logger.error("No points found in CSV file %s", args.inputPath)
        sys.exit(1)

    logger.debug("Read %d points from %s", len(points), args.inputPath)
    logger.debug("Running DBSCAN with eps=%.4f km, minPoints=%d", args.eps, args.minPts)

    settings = DbscanSettings() \
        .withEpsilon(args.eps) \
        .withNumberOfPoints(args.minPts)
    model = args.dbscanClass.train(points, settings)

    logger.debug("Found %d clusters", len(model.clusters))
    logger.debug("Found %d noise points", len(model.noise))

    labels = model.labels(len(points))
    filteredIndices = LabelHelper.filterPoints(points, labels)
    logger.debug("Filtered to %d points", len(filteredIndices))

    try:
        if args.outputPath is None:
            IOHelper.writeFilteredPointsToStdout(records, filteredIndices)
        else:
            IOHelper.writeFilteredPointsToCsv(args.outputPath, header, records, filteredIndices)
            logger.debug("Filtered points written to %s", args.outputPath)
    except OSError as e:
        logger.error("Error writing output: %s", e)
        sys.exit(1)


if __name__ == '__main__':
    main()
