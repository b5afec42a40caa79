from abc import abstractmethod, ABC
from collections.abc import Sequence
import logging
import math
from typing import Optional, Any, Self

import numpy as np
from scipy.spatial.distance import euclidean


logger = logging.getLogger(__name__)

PointCoordinates = tuple[float, float]
PointId = int
ClusterId = int

# Coefficient to translate from degrees to radians
DEGREE_RAD = math.pi / 180.0
# Earth radius in kilometers
EARTH_R = 6371.0

DBSCAN_OUTLIER_INDEX = -1

_FAST_SINE_B = 4.0 / math.pi
_FAST_SINE_C = -4.0 / (math.pi * math.pi)
_FAST_SINE_P = 0.225


class Point:
    """Geographic coordinate stored as ``(longitude, latitude)``."""

    coordinates: PointCoordinates

    def __init__(self, coordinates: Sequence[float]) -> None:
        if len(coordinates) != 2:
            raise ValueError(f"Point expects (longitude, latitude), got {tuple(coordinates)}")
        self.coordinates = (float(coordinates[0]), float(coordinates[1]))

    @classmethod
    def fromArray(cls, coords: Sequence[float]) -> Self:
        return cls(tuple(coords))

    @classmethod
    def fromVariadic(cls, *coords: float) -> Self:
        return cls(coords)

    @property
    def longitude(self) -> float:
        return self.coordinates[0]

    @property
    def latitude(self) -> float:
        return self.coordinates[1]

    def sqDist(self, other: Self) -> float:
        return distanceSphericalFast(self, other)

    def lessEq(self, other: Self) -> bool:
        return self.coordinates[0] <= other.coordinates[0] and self.coordinates[1] <= other.coordinates[1]

    def greaterEq(self, other: Self) -> bool:
        return self.coordinates[0] >= other.coordinates[0] and self.coordinates[1] >= other.coordinates[1]

    def __getitem__(self, dimension: int) -> float:
        return self.coordinates[dimension]

    def __eq__(self, other: Any) -> bool:
        if isinstance(other, Point):
            return self.coordinates == other.coordinates
        return False

    def __hash__(self) -> int:
        return hash(self.coordinates)

    def __repr__(self) -> str:
        return f"Point({self.coordinates[0]!r}, {self.coordinates[1]!r})"

    def __str__(self) -> str:
        return f"Point at ({', '.join(map(str, self.coordinates))})"


PointList = list[Point]


def distanceSpherical(p1: Point, p2: Point) -> float:
    v1 = (p1.coordinates[1] - p2.coordinates[1]) * DEGREE_RAD
    v1 = v1 * v1

    v2 = (p1.coordinates[0] - p2.coordinates[0]) * DEGREE_RAD * math.cos((p1.coordinates[1] + p2.coordinates[1]) / 2.0 * DEGREE_RAD)
    v2 = v2 * v2

    return EARTH_R * math.sqrt(v1 + v2)


def fastSine(x: float) -> float:
    """Parabola approximation of sine, only defined on ``[-pi, pi]``."""
    if not (-math.pi <= x <= math.pi):
        raise ValueError(f"fastSine argument {x} is out of range [-pi, pi]")

    y = _FAST_SINE_B * x + _FAST_SINE_C * x * abs(x)
    return _FAST_SINE_P * (y * abs(y) - y) + y


def fastCos(x: float) -> float:
    x += math.pi / 2.0
    while x > math.pi:
        x -= 2.0 * math.pi

    return fastSine(x)


def distanceSphericalFast(p1: Point, p2: Point) -> float:
    """Squared spherical distance in degrees, without sqrt and Earth radius scaling.

    To get kilometers take the square root and multiply by ``EARTH_R * DEGREE_RAD``.
    Radii compared against it have to be converted the same way once, see
    ``FastSphericalDistance.radiusFromKilometers``.
    """
    v1 = p1.coordinates[1] - p2.coordinates[1]
    v2 = (p1.coordinates[0] - p2.coordinates[0]) * fastCos((p1.coordinates[1] + p2.coordinates[1]) / 2.0 * DEGREE_RAD)

    return v1 * v1 + v2 * v2


class DistanceMeasure(ABC):
    @staticmethod
    @abstractmethod
    def compute(a: Point, b: Point) -> float:
        return 0.0

    def squaredDistance(self, a: Point, b: Point) -> float:
        d = self.compute(a, b)
        return d * d

    def radiusFromKilometers(self, km: float) -> float:
        return km / (EARTH_R * DEGREE_RAD)

    def radiusToDegrees(self, radius: float) -> float:
        return radius

    def __str__(self) -> str:
        return type(self).__name__


class SphericalDistance(DistanceMeasure):
    @staticmethod
    def compute(a: Point, b: Point) -> float:
        return distanceSpherical(a, b)

    def radiusFromKilometers(self, km: float) -> float:
        return km

    def radiusToDegrees(self, radius: float) -> float:
        return radius / (EARTH_R * DEGREE_RAD)


class FastSphericalDistance(DistanceMeasure):
    @staticmethod
    def compute(a: Point, b: Point) -> float:
        return math.sqrt(distanceSphericalFast(a, b))

    def squaredDistance(self, a: Point, b: Point) -> float:
        return distanceSphericalFast(a, b)


class EuclideanDistance(DistanceMeasure):
    @staticmethod
    def compute(a: Point, b: Point) -> float:
        return float(euclidean(a.coordinates, b.coordinates))


class Cluster:
    clusterId: ClusterId
    points: list[PointId]

    def __init__(self, clusterId: ClusterId, points: Optional[list[PointId]] = None) -> None:
        self.clusterId = clusterId
        self.points = [] if points is None else points

    def centroidAndBounds(self, points: Sequence[Point]) -> tuple[Point, Point, Point]:
        if not self.points:
            raise ValueError(f"Cluster {self.clusterId} is empty")

        lower = [180.0, 90.0]
        upper = [-180.0, -90.0]
        center = [0.0, 0.0]

        for i in self.points:
            pt = points[i]

            for j in range(2):
                center[j] += pt[j]

                if pt[j] < lower[j]:
                    lower[j] = pt[j]
                if pt[j] > upper[j]:
                    upper[j] = pt[j]

        for j in range(2):
            center[j] /= len(self.points)

        return Point(center), Point(lower), Point(upper)

    def __len__(self) -> int:
        return len(self.points)

    def __eq__(self, other: object) -> bool:
        if isinstance(other, Cluster):
            return self.clusterId == other.clusterId and self.points == other.points
        return False

    def __repr__(self) -> str:
        return f"Cluster({self.clusterId}, {self.points})"


def inside(innerMin: Point, innerMax: Point, outerMin: Point, outerMax: Point) -> bool:
    return innerMin.greaterEq(outerMin) and innerMax.lessEq(outerMax)


class SpatialIndex(ABC):
    points: PointList
    distanceMeasure: DistanceMeasure

    # Static
    defaultDistanceMeasure: DistanceMeasure = FastSphericalDistance()

    def __init__(self, points: Sequence[Point], distanceMeasure: Optional[DistanceMeasure] = None) -> None:
        self.points = list(points)
        self.distanceMeasure = self.defaultDistanceMeasure if distanceMeasure is None else distanceMeasure

    @abstractmethod
    def inRange(self, pt: Point, dist: float, nodes: Optional[list[PointId]] = None) -> list[PointId]:
        raise NotImplementedError

    def __len__(self) -> int:
        return len(self.points)


def regionQuery(points: Sequence[Point], pt: Point, eps: float, distanceMeasure: Optional[DistanceMeasure] = None) -> list[PointId]:
    dm = SpatialIndex.defaultDistanceMeasure if distanceMeasure is None else distanceMeasure
    sqEps = eps * eps
    return [i for i, p in enumerate(points) if dm.squaredDistance(p, pt) < sqEps]


class BruteForceIndex(SpatialIndex):
    def inRange(self, pt: Point, dist: float, nodes: Optional[list[PointId]] = None) -> list[PointId]:
        if nodes is None:
            nodes = []
        if dist < 0:
            return nodes
        nodes.extend(regionQuery(self.points, pt, dist, self.distanceMeasure))
        return nodes


class KDTreeNode:
    pointId: PointId
    split: int
    equalIds: list[PointId]
    left: Optional[Self]
    right: Optional[Self]

    def __init__(
        self,
        pointId: PointId,
        split: int,
        equalIds: Optional[list[PointId]] = None,
        left: Optional[Self] = None,
        right: Optional[Self] = None
    ) -> None:
        self.pointId = pointId
        self.split = split
        self.equalIds = [] if equalIds is None else equalIds
        self.left = left
        self.right = right

    def height(self) -> int:
        leftHeight = 0 if self.left is None else self.left.height()
        rightHeight = 0 if self.right is None else self.right.height()
        return max(leftHeight, rightHeight) + 1


class PreSorted:
    # Point ids sorted on each dimension; coordinates only live here while the tree is built
    coordinates: np.ndarray
    cur: list[np.ndarray]

    def __init__(self, coordinates: np.ndarray, cur: list[np.ndarray]) -> None:
        self.coordinates = coordinates
        self.cur = cur

    @classmethod
    def fromPoints(cls, points: Sequence[Point]) -> Self:
        coordinates = np.array([pt.coordinates for pt in points], dtype=np.float64).reshape(-1, 2)
        # lexsort is stable and sorts by the last key first, ties go to the other dimension
        cur = [np.lexsort((coordinates[:, 1 - dim], coordinates[:, dim])) for dim in range(2)]
        return cls(coordinates, cur)

    def splitMed(self, dim: int) -> tuple[PointId, list[PointId], Self, Self]:
        """Returns the median on ``dim``, its exact duplicates and the two halves.

        Both halves stay sorted on every dimension: the left one holds ids whose
        ``dim`` value is less than the median's, the right one the rest.
        """
        order = self.cur[dim]
        values = self.coordinates[order, dim]

        m = len(order) // 2
        while m > 0 and values[m - 1] == values[m]:
            m -= 1

        mh = m
        medianCoordinates = self.coordinates[order[m]]
        while mh < len(order) - 1 and np.array_equal(self.coordinates[order[mh + 1]], medianCoordinates):
            mh += 1

        med = int(order[m])
        equal = order[m + 1:mh + 1].tolist()
        pivot = values[m]

        left: list[Optional[np.ndarray]] = [None, None]
        right: list[Optional[np.ndarray]] = [None, None]
        left[dim] = order[:m]
        right[dim] = order[mh + 1:]

        for d in range(2):
            if d == dim:
                continue

            rest = self.cur[d][~np.isin(self.cur[d], order[m:mh + 1])]
            isLess = self.coordinates[rest, dim] < pivot
            left[d] = rest[isLess]
            right[d] = rest[~isLess]

        return med, equal, PreSorted(self.coordinates, left), PreSorted(self.coordinates, right)


class KDTree(SpatialIndex):
    """2-D tree over ``points``; nodes hold indices into the point list only.

    Based on the K-D tree by Ethan Burns, New BSD License.
    """

    root: Optional[KDTreeNode]

    def __init__(self, points: Sequence[Point], distanceMeasure: Optional[DistanceMeasure] = None) -> None:
        super().__init__(points, distanceMeasure)
        self.root = None

        if self.points:
            self.root = self._buildTree(0, PreSorted.fromPoints(self.points))

    @classmethod
    def _buildTree(cls, depth: int, nodes: PreSorted) -> Optional[KDTreeNode]:
        split = depth % 2
        size = len(nodes.cur[split])

        if size == 0:
            return None
        if size == 1:
            return KDTreeNode(int(nodes.cur[split][0]), split)

        med, equal, left, right = nodes.splitMed(split)
        return KDTreeNode(
            med, split, equal,
            cls._buildTree(depth + 1, left),
            cls._buildTree(depth + 1, right)
        )

    def insert(self, point: Point) -> None:
        """Adds ``point`` as a new leaf.

        Inserting a point that is already a member of the tree invalidates the tree.
        """
        self.points.append(point)
        pointId = len(self.points) - 1

        if self.root is None:
            self.root = KDTreeNode(pointId, 0)
            return

        node = self.root
        depth = 0
        while True:
            depth += 1
            if point[node.split] < self.points[node.pointId][node.split]:
                if node.left is None:
                    node.left = KDTreeNode(pointId, depth % 2)
                    return
                node = node.left
            else:
                if node.right is None:
                    node.right = KDTreeNode(pointId, depth % 2)
                    return
                node = node.right

    def inRange(self, pt: Point, dist: float, nodes: Optional[list[PointId]] = None) -> list[PointId]:
        if nodes is None:
            nodes = []
        if dist < 0:
            return nodes

        halfBand = self.distanceMeasure.radiusToDegrees(dist) / 2.0
        self._inRange(self.root, pt, dist * dist, halfBand, nodes)
        return nodes

    def _inRange(self, t: Optional[KDTreeNode], pt: Point, sqRadius: float, halfBand: float, nodes: list[PointId]) -> None:
        if t is None:
            return

        nodePoint = self.points[t.pointId]
        split = t.split
        other = 1 - split

        if pt[split] - nodePoint[split] < 0:
            thisSide, otherSide = t.left, t.right
        else:
            thisSide, otherSide = t.right, t.left

        # Distance to the splitting line, measured with the same metric on a shared other coordinate.
        # Longitude splits use the poleward edge of the latitudes within reach, where the scaling is smallest.
        if split == 0:
            lat = pt[1]
            shared = min(lat + halfBand, 90.0) if lat >= 0 else max(lat - halfBand, -90.0)
        else:
            shared = (pt[other] + nodePoint[other]) / 2.0
        p1 = self._planePoint(split, pt[split], shared)
        p2 = self._planePoint(split, nodePoint[split], shared)
        sqPlaneDistance = self.distanceMeasure.squaredDistance(p1, p2)

        self._inRange(thisSide, pt, sqRadius, halfBand, nodes)
        if sqPlaneDistance <= sqRadius:
            if self.distanceMeasure.squaredDistance(nodePoint, pt) < sqRadius:
                nodes.append(t.pointId)
                nodes.extend(t.equalIds)
            self._inRange(otherSide, pt, sqRadius, halfBand, nodes)

    @staticmethod
    def _planePoint(split: int, splitValue: float, otherValue: float) -> Point:
        if split == 0:
            return Point((splitValue, otherValue))
        return Point((otherValue, splitValue))

    def height(self) -> int:
        return 0 if self.root is None else self.root.height()


class DbscanSettings:
    distanceMeasure: DistanceMeasure
    epsilon: float
    numberOfPoints: int

    # Static
    defaultDistanceMeasure: DistanceMeasure = FastSphericalDistance()
    defaultEpsilon: float = 0.1
    defaultNumberOfPoints: int = 3

    def __init__(self) -> None:
        self.distanceMeasure = self.defaultDistanceMeasure
        self.epsilon = self.defaultEpsilon
        self.numberOfPoints = self.defaultNumberOfPoints

    def withDistanceMeasure(self, dm: DistanceMeasure) -> Self:
        self.distanceMeasure = dm
        return self

    def withEpsilon(self, eps: float) -> Self:
        self.epsilon = eps
        return self

    def withNumberOfPoints(self, minPts: int) -> Self:
        self.numberOfPoints = minPts
        return self

    def __str__(self) -> str:
        return f"eps={self.epsilon} km, minPts={self.numberOfPoints}, distance={self.distanceMeasure}"


class DbscanModel:
    clusters: list[Cluster]
    noise: list[PointId]
    settings: DbscanSettings

    def __init__(self, clusters: list[Cluster], noise: list[PointId], settings: DbscanSettings) -> None:
        self.clusters = clusters
        self.noise = noise
        self.settings = settings

    def noisePoints(self) -> list[PointId]:
        # Append-only discovery log: may also contain border points absorbed later
        return list(self.noise)

    def clusteredPoints(self) -> list[PointId]:
        return [i for cluster in self.clusters for i in cluster.points]

    def outliers(self) -> list[PointId]:
        clustered = set(self.clusteredPoints())
        return [i for i in self.noise if i not in clustered]

    def labels(self, numberOfPoints: int) -> np.ndarray:
        result = np.full(numberOfPoints, DBSCAN_OUTLIER_INDEX, dtype=np.int64)
        for cluster in self.clusters:
            result[cluster.points] = cluster.clusterId
        return result


# DBSCAN algorithm pseudocode (from <http://en.wikipedia.org/wiki/DBSCAN>):
#
# DBSCAN(D, eps, MinPts)
#    C = 0
#    for each unvisited point P in dataset D
#       mark P as visited
#       NeighborPts = regionQuery(P, eps)
#       if sizeof(NeighborPts) < MinPts
#          mark P as NOISE
#       else
#          C = next cluster
#          expandCluster(P, NeighborPts, C, eps, MinPts)
#
# expandCluster(P, NeighborPts, C, eps, MinPts)
#    add P to cluster C
#    for each point P' in NeighborPts
#       if P' is not visited
#          mark P' as visited
#          NeighborPts' = regionQuery(P', eps)
#          if sizeof(NeighborPts') >= MinPts
#             NeighborPts = NeighborPts joined with NeighborPts'
#       if P' is not yet member of any cluster
#          add P' to cluster C
class Dbscan(ABC):
    settings: DbscanSettings

    def __init__(self, settings: DbscanSettings) -> None:
        super().__init__()
        self.settings = settings

    @abstractmethod
    def createIndex(self, points: Sequence[Point]) -> SpatialIndex:
        raise NotImplementedError

    def run(self, points: Sequence[Point]) -> DbscanModel:
        minPts = self.settings.numberOfPoints
        if not self.settings.epsilon > 0:
            raise ValueError(f"eps must be positive, got {self.settings.epsilon}")
        if minPts < 1:
            raise ValueError(f"minPts must be at least 1, got {minPts}")

        index = self.createIndex(points)
        logger.debug("Built %s over %d points", type(index).__name__, len(index))

        # The index compares in the distance measure's own units, convert eps only once
        eps = self.settings.distanceMeasure.radiusFromKilometers(self.settings.epsilon)

        n = len(index)
        visited = np.zeros(n, dtype=bool)
        members = np.zeros(n, dtype=bool)
        neighborUnique = np.zeros(n, dtype=bool)
        clusters: list[Cluster] = []
        noise: list[PointId] = []

        for i in range(n):
            if visited[i]:
                continue
            visited[i] = True

            neighborPts = index.inRange(index.points[i], eps)
            if len(neighborPts) < minPts:
                noise.append(i)
                continue

            cluster = Cluster(len(clusters), [i])
            members[i] = True

            neighborUnique.fill(False)
            neighborUnique[neighborPts] = True

            self._expandCluster(index, cluster, neighborPts, eps, minPts, visited, members, neighborUnique)
            clusters.append(cluster)

        logger.debug("Found %d clusters and %d noise points (%s)", len(clusters), len(noise), self.settings)
        return DbscanModel(clusters, noise, self.settings)

    @staticmethod
    def _expandCluster(
        index: SpatialIndex,
        cluster: Cluster,
        neighborPts: list[PointId],
        eps: float,
        minPts: int,
        visited: np.ndarray,
        members: np.ndarray,
        neighborUnique: np.ndarray
    ) -> None:
        # neighborPts grows while it is being walked
        j = 0
        while j < len(neighborPts):
            k = neighborPts[j]
            if not visited[k]:
                visited[k] = True
                moreNeighbors = index.inRange(index.points[k], eps)
                if len(moreNeighbors) >= minPts:
                    for p in moreNeighbors:
                        if not neighborUnique[p]:
                            neighborPts.append(p)
                            neighborUnique[p] = True

            if not members[k]:
                cluster.points.append(k)
                members[k] = True
            j += 1

    @classmethod
    def train(cls, points: Sequence[Point], settings: Optional[DbscanSettings] = None) -> DbscanModel:
        return cls(DbscanSettings() if settings is None else settings).run(points)


class KDTreeDbscan(Dbscan):
    def createIndex(self, points: Sequence[Point]) -> SpatialIndex:
        tree = KDTree(points, self.settings.distanceMeasure)
        logger.debug("KD-tree height is %d", tree.height())
        return tree


class BruteForceDbscan(Dbscan):
    def createIndex(self, points: Sequence[Point]) -> SpatialIndex:
        return BruteForceIndex(points, self.settings.distanceMeasure)


def dbScan(points: Sequence[Point], eps: float, minPts: int) -> tuple[list[Cluster], list[PointId]]:
    settings = DbscanSettings() \
        .withEpsilon(eps) \
        .withNumberOfPoints(minPts)
    model = KDTreeDbscan.train(points, settings)
    return model.clusters, model.noise
