import math

import numpy as np
import pytest
from sklearn.cluster import DBSCAN

from GeoDbscan import (
    DBSCAN_OUTLIER_INDEX, BruteForceDbscan, Cluster, DbscanModel, DbscanSettings, KDTreeDbscan, Point,
    dbScan, distanceSphericalFast, regionQuery,
)

from conftest import kmToDegrees


def settingsFor(eps, minPts):
    return DbscanSettings() \
        .withEpsilon(eps) \
        .withNumberOfPoints(minPts)


def memberSets(model):
    return {cluster.clusterId: set(cluster.points) for cluster in model.clusters}


class TestDbscanSettings:
    def test_defaults(self):
        settings = DbscanSettings()
        assert settings.epsilon == 0.1
        assert settings.numberOfPoints == 3

    def test_builder(self):
        settings = settingsFor(0.8, 2)
        assert settings.epsilon == 0.8
        assert settings.numberOfPoints == 2


class TestDbscanBasic:
    def test_five_points(self, spb_points):
        clusters, noise = dbScan(spb_points, 0.8, 2)

        assert clusters == [Cluster(0, [0, 1])]
        assert noise == [2, 3, 4]

    def test_five_points_cover_every_index(self, spb_points):
        clusters, noise = dbScan(spb_points, 0.8, 2)

        covered = set(noise)
        for cluster in clusters:
            covered.update(cluster.points)
        assert covered == set(range(len(spb_points)))

    def test_large_eps_gives_one_cluster(self, spb_points):
        clusters, noise = dbScan(spb_points, 50.0, 2)

        assert len(clusters) == 1
        assert clusters[0].points[0] == 0
        assert sorted(clusters[0].points) == [0, 1, 2, 3, 4]
        assert noise == []

    def test_min_points_one_makes_every_point_a_cluster(self, spb_points):
        clusters, noise = dbScan(spb_points, 0.001, 1)

        assert [c.clusterId for c in clusters] == [0, 1, 2, 3, 4]
        assert [c.points for c in clusters] == [[0], [1], [2], [3], [4]]
        assert noise == []

    def test_all_noise(self, spb_points):
        clusters, noise = dbScan(spb_points, 0.8, 3)

        assert clusters == []
        assert noise == [0, 1, 2, 3, 4]

    def test_empty_input(self):
        model = KDTreeDbscan.train([], settingsFor(1.0, 2))
        assert model.clusters == []
        assert model.noise == []

    def test_duplicate_points_form_one_cluster(self):
        points = [Point((30.0, 60.0))] * 5 + [Point((31.0, 60.0))]
        clusters, noise = dbScan(points, 0.1, 3)

        assert [set(c.points) for c in clusters] == [{0, 1, 2, 3, 4}]
        assert noise == [5]

    @pytest.mark.parametrize("eps, minPts", [(0.0, 2), (-1.0, 2), (float('nan'), 2), (1.0, 0)])
    def test_rejects_invalid_parameters(self, spb_points, eps, minPts):
        with pytest.raises(ValueError):
            KDTreeDbscan.train(spb_points, settingsFor(eps, minPts))


class TestBorderPoints:
    @pytest.fixture
    def line_points(self):
        # Along a meridian, offsets in km: the first point only reaches the core through index 1
        offsets = [0.0, 0.9, 1.2, 1.5]
        return [Point((30.0, 60.0 + kmToDegrees(km))) for km in offsets]

    def test_noise_point_absorbed_as_border_stays_in_noise_log(self, line_points):
        model = KDTreeDbscan.train(line_points, settingsFor(1.0, 3))

        assert model.noise == [0]
        assert memberSets(model) == {0: {0, 1, 2, 3}}
        assert model.clusters[0].points[0] == 1

    def test_outliers_exclude_absorbed_points(self, line_points):
        model = KDTreeDbscan.train(line_points, settingsFor(1.0, 3))

        assert model.noisePoints() == [0]
        assert model.outliers() == []
        assert sorted(model.clusteredPoints()) == [0, 1, 2, 3]
        assert model.labels(len(line_points)).tolist() == [0, 0, 0, 0]

    def test_border_point_joins_first_cluster_only(self):
        # Two dense groups with a border point within reach of both
        offsets = [0.0, 0.05, 0.1, 0.15, 0.2, 0.92, 1.6, 1.65, 1.7, 1.75, 1.8]
        points = [Point((30.0, 60.0 + kmToDegrees(km))) for km in offsets]

        model = KDTreeDbscan.train(points, settingsFor(0.75, 5))

        assert memberSets(model) == {0: {0, 1, 2, 3, 4, 5}, 1: {6, 7, 8, 9, 10}}
        assert model.noise == []


class TestDbscanProperties:
    @pytest.mark.parametrize("eps, minPts", [(0.3, 3), (0.5, 5), (1.0, 10)])
    def test_coverage_and_exclusivity(self, random_points, eps, minPts):
        model = KDTreeDbscan.train(random_points, settingsFor(eps, minPts))

        owners = {}
        for cluster in model.clusters:
            assert len(cluster.points) == len(set(cluster.points))
            for i in cluster.points:
                assert i not in owners
                owners[i] = cluster.clusterId

        assert set(owners) | set(model.noise) == set(range(len(random_points)))
        assert model.noise == sorted(set(model.noise))

    def test_cluster_ids_are_sequential(self, random_points):
        model = KDTreeDbscan.train(random_points, settingsFor(0.5, 4))
        assert [c.clusterId for c in model.clusters] == list(range(len(model.clusters)))

    def test_clusters_discovered_in_index_order(self, random_points):
        model = KDTreeDbscan.train(random_points, settingsFor(0.5, 4))
        seeds = [c.points[0] for c in model.clusters]
        assert seeds == sorted(seeds)

    def test_deterministic(self, random_points):
        first = KDTreeDbscan.train(random_points, settingsFor(0.4, 4))
        second = KDTreeDbscan.train(random_points, settingsFor(0.4, 4))

        assert [c.points for c in first.clusters] == [c.points for c in second.clusters]
        assert first.noise == second.noise

    @pytest.mark.parametrize("eps, minPts", [(0.2, 3), (0.4, 4), (0.8, 8)])
    def test_kdtree_and_brute_force_agree(self, random_points, eps, minPts):
        fromTree = KDTreeDbscan.train(random_points, settingsFor(eps, minPts))
        fromScan = BruteForceDbscan.train(random_points, settingsFor(eps, minPts))

        assert memberSets(fromTree) == memberSets(fromScan)
        assert fromTree.noise == fromScan.noise

    def test_noise_points_lack_neighbours(self, random_points):
        eps, minPts = 0.4, 5
        model = KDTreeDbscan.train(random_points, settingsFor(eps, minPts))

        for i in model.noise:
            assert len(regionQuery(random_points, random_points[i], kmToDegrees(eps))) < minPts

    def test_agrees_with_scikit_learn(self, random_points):
        eps, minPts = 0.4, 5
        radius = kmToDegrees(eps)
        model = KDTreeDbscan.train(random_points, settingsFor(eps, minPts))

        n = len(random_points)
        distances = np.zeros((n, n))
        for i in range(n):
            for j in range(n):
                distances[i, j] = math.sqrt(distanceSphericalFast(random_points[i], random_points[j]))
        reference = DBSCAN(eps=radius, min_samples=minPts, metric='precomputed').fit(distances)

        assert set(model.outliers()) == set(np.flatnonzero(reference.labels_ == -1).tolist())

        labels = model.labels(n)
        cores = reference.core_sample_indices_
        for a in cores:
            for b in cores:
                assert (labels[a] == labels[b]) == (reference.labels_[a] == reference.labels_[b])


class TestDbscanModel:
    def test_labels(self):
        model = DbscanModel([Cluster(0, [1, 2]), Cluster(1, [4])], [0, 3], DbscanSettings())
        assert model.labels(5).tolist() == [DBSCAN_OUTLIER_INDEX, 0, 0, DBSCAN_OUTLIER_INDEX, 1]

    def test_clustered_points_and_outliers(self):
        model = DbscanModel([Cluster(0, [1, 2, 0])], [0, 3], DbscanSettings())
        assert model.clusteredPoints() == [1, 2, 0]
        assert model.outliers() == [3]
        assert model.noisePoints() == [0, 3]
