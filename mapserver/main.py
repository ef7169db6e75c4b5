#!/usr/bin/env python3
import copy
import logging
import sys
import time
from typing import Dict, List, Optional, Tuple

import redis
import yaml
from aiohttp import web
from prometheus_client import Counter, Gauge, Histogram, generate_latest

from routemap.engine import NetworkTopologyEngine
from routemap.health import thresholds_from_config
from routemap.render import render_png

from .poller import RecordPoller
from .store import RecordStore
from .version import get_cached_version

logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)

DEFAULT_WORKSPACE = 'default'

DEFAULT_CONFIG = {
    'mapserver': {
        'redis': {'host': 'localhost', 'port': 6379, 'db': 0, 'password': None},
        'server': {'host': '0.0.0.0', 'port': 8758},
        'window': {'lookback_seconds': 3600, 'max_records': 5000},
        'source': {
            'enabled': False,
            'url': None,
            'workspace': DEFAULT_WORKSPACE,
            'poll_interval': 30,
            'lookback_minutes': 60,
            'timeout': 10,
        },
        'health': {'profile': 'default'},
        'layout': {
            'mode': 'hierarchical',
            'layer_gap': 200,
            'node_gap': 80,
            'pin_endpoints': True,
            'iterations': 300,
        },
    }
}


class UnknownWorkspace(LookupError):
    pass


def _merge(base: Dict, override: Dict) -> Dict:
    merged = copy.deepcopy(base)
    for key, value in (override or {}).items():
        if isinstance(value, dict) and isinstance(merged.get(key), dict):
            merged[key] = _merge(merged[key], value)
        else:
            merged[key] = value
    return merged


def load_config(config_path: Optional[str]) -> Dict:
    """Read the YAML config and fill in defaults for every missing key"""
    loaded = {}
    if config_path:
        with open(config_path, 'r') as f:
            loaded = yaml.safe_load(f) or {}
    return _merge(DEFAULT_CONFIG, loaded)


class TopologyMapServer:
    def __init__(self, config_path: Optional[str] = None, redis_client=None):
        self.config = load_config(config_path)
        settings = self.config['mapserver']

        self.redis_client = redis_client or redis.Redis(
            host=settings['redis']['host'],
            port=settings['redis']['port'],
            db=settings['redis']['db'],
            password=settings['redis']['password'],
            decode_responses=True
        )
        self.store = RecordStore(
            self.redis_client,
            lookback_seconds=int(settings['window']['lookback_seconds']),
            max_records=int(settings['window']['max_records']),
        )

        self.thresholds = thresholds_from_config(settings['health'])
        self.layout_config = settings['layout']
        self.engines: Dict[str, NetworkTopologyEngine] = {}

        source = settings['source']
        self.poller: Optional[RecordPoller] = None
        if source.get('enabled') and source.get('url'):
            self.poller = RecordPoller(
                url=source['url'],
                workspace=source.get('workspace', DEFAULT_WORKSPACE),
                on_records=self.replace_window,
                poll_interval=int(source['poll_interval']),
                lookback_minutes=int(source['lookback_minutes']),
                timeout=int(source['timeout']),
                on_failure=self._record_fetch_failure,
            )

        # Prometheus metrics
        self.rebuilds_total = Counter(
            'routemap_rebuilds_total',
            'Topology graph rebuilds',
            ['workspace']
        )
        self.rebuild_duration = Histogram(
            'routemap_rebuild_duration_seconds',
            'Duration of topology graph rebuilds',
            ['workspace']
        )
        self.graph_nodes = Gauge(
            'routemap_graph_nodes',
            'Nodes in the current topology graph',
            ['workspace']
        )
        self.graph_edges = Gauge(
            'routemap_graph_edges',
            'Edges in the current topology graph',
            ['workspace']
        )
        self.route_changes = Gauge(
            'routemap_route_changes',
            'Route changes detected in the current data window',
            ['workspace']
        )
        self.ingested_records = Counter(
            'routemap_ingested_records_total',
            'Probe records accepted into the data window',
            ['workspace']
        )
        self.fetch_failures = Counter(
            'routemap_fetch_failures_total',
            'Failed upstream record fetches',
            ['workspace']
        )

    def _record_fetch_failure(self, workspace: str, error: Exception):
        self.fetch_failures.labels(workspace=workspace).inc()

    def get_engine(self, workspace: str) -> NetworkTopologyEngine:
        engine = self.engines.get(workspace)
        if engine is None:
            engine = NetworkTopologyEngine.from_config(self.layout_config, thresholds=self.thresholds)
            self.engines[workspace] = engine
        return engine

    def rebuild(self, workspace: str) -> NetworkTopologyEngine:
        """Rebuild one workspace's graph from its stored window"""
        start = time.time()
        records = self.store.load_records(workspace)
        engine = self.get_engine(workspace)
        graph = engine.refresh(records)

        self.rebuilds_total.labels(workspace=workspace).inc()
        self.rebuild_duration.labels(workspace=workspace).observe(time.time() - start)
        self.graph_nodes.labels(workspace=workspace).set(len(graph.nodes))
        self.graph_edges.labels(workspace=workspace).set(len(graph.edges))
        self.route_changes.labels(workspace=workspace).set(
            sum(report.change_count for report in engine.route_changes()))
        return engine

    async def ingest_records(self, workspace: str, raw_records: List[Dict], replace: bool = False) -> int:
        count = self.store.add_records(workspace, raw_records, replace=replace)
        self.ingested_records.labels(workspace=workspace).inc(count)
        self.rebuild(workspace)
        logger.info(f"Ingested {count} records into workspace {workspace}")
        return count

    async def replace_window(self, workspace: str, raw_records: List[Dict]) -> int:
        """Polled batches cover the whole lookback window, so they replace what is stored"""
        return await self.ingest_records(workspace, raw_records, replace=True)

    def _workspace_engine(self, request) -> Tuple[str, NetworkTopologyEngine]:
        workspace = request.query.get('workspace', DEFAULT_WORKSPACE)
        if workspace in self.engines:
            return workspace, self.engines[workspace]
        if self.store.has_workspace(workspace):
            return workspace, self.rebuild(workspace)
        raise UnknownWorkspace(workspace)

    def source_status(self) -> Optional[Dict]:
        return self.poller.status() if self.poller else None

    async def ingest(self, request):
        """Accept a pushed batch of probe records"""
        try:
            data = await request.json()
            records = data.get('records')
            if not isinstance(records, list):
                return web.json_response({'error': 'records must be a list'}, status=400)
            workspace = str(data.get('workspace', DEFAULT_WORKSPACE))

            count = await self.ingest_records(workspace, records, replace=bool(data.get('replace', False)))
            engine = self.engines[workspace]
            return web.json_response({
                'status': 'ok',
                'workspace': workspace,
                'accepted': count,
                'nodes': len(engine.graph.nodes),
                'edges': len(engine.graph.edges),
                'generation': engine.generation,
            })

        except Exception as e:
            logger.error(f"Failed to ingest records: {e}")
            return web.json_response({'error': str(e)}, status=400)

    async def refresh(self, request):
        """Manual refresh; also the only way to restart a failed poller"""
        try:
            workspace = request.query.get('workspace', DEFAULT_WORKSPACE)
            restarted = False
            if self.poller is not None and self.poller.workspace == workspace and not self.poller.running:
                self.poller.restart()
                restarted = True

            if workspace not in self.engines and not self.store.has_workspace(workspace) and not restarted:
                return web.json_response({'error': f'Unknown workspace: {workspace}'}, status=404)

            engine = self.rebuild(workspace)
            return web.json_response({
                'status': 'refreshed',
                'workspace': workspace,
                'generation': engine.generation,
                'poller_restarted': restarted,
                'source': self.source_status(),
                'timestamp': time.time()
            })

        except Exception as e:
            logger.error(f"Manual refresh failed: {e}", exc_info=True)
            return web.json_response({'error': str(e)}, status=500)

    async def get_network_topology(self, request):
        """Graph, layout and summary for one workspace"""
        try:
            workspace, engine = self._workspace_engine(request)
            return web.json_response({
                'workspace': workspace,
                'summary': engine.generate_topology_summary(),
                'topology': engine.get_interactive_topology_data(),
                'destinations': engine.destination_summaries(),
                'source': self.source_status(),
                'timestamp': time.time()
            })

        except UnknownWorkspace as e:
            return web.json_response({'error': f'Unknown workspace: {e}'}, status=404)
        except Exception as e:
            logger.error(f"Failed to get network topology: {e}")
            return web.json_response({'error': str(e)}, status=500)

    async def get_topology_png(self, request):
        """Render the current layout as PNG"""
        try:
            width = int(request.query.get('width', 12))
            height = int(request.query.get('height', 8))
            workspace, engine = self._workspace_engine(request)

            png = render_png(engine.graph, engine.positions, engine.highlight(), width, height)
            return web.Response(
                body=png,
                content_type='image/png',
                headers={'Cache-Control': 'no-cache'}
            )

        except UnknownWorkspace as e:
            return web.json_response({'error': f'Unknown workspace: {e}'}, status=404)
        except ValueError as e:
            return web.json_response({'error': str(e)}, status=400)
        except Exception as e:
            logger.error(f"Failed to render topology: {e}")
            return web.json_response({'error': str(e)}, status=500)

    async def get_node(self, request):
        """Select a node and return its detail with the path highlight"""
        try:
            _, engine = self._workspace_engine(request)
            detail = engine.select_node(request.match_info['node_id'])
            return web.json_response(detail)

        except UnknownWorkspace as e:
            return web.json_response({'error': f'Unknown workspace: {e}'}, status=404)
        except Exception as e:
            logger.error(f"Failed to select node: {e}")
            return web.json_response({'error': str(e)}, status=500)

    async def drag_node(self, request):
        """Pin a node where the user dropped it"""
        try:
            _, engine = self._workspace_engine(request)
            data = await request.json()
            x, y = float(data['x']), float(data['y'])
        except UnknownWorkspace as e:
            return web.json_response({'error': f'Unknown workspace: {e}'}, status=404)
        except Exception as e:
            return web.json_response({'error': f'Invalid drag request: {e}'}, status=400)

        try:
            node_id = request.match_info['node_id']
            position = engine.drag_node(node_id, x, y)
            if position is None:
                return web.json_response({'error': f'Unknown node: {node_id}'}, status=404)
            return web.json_response({'node_id': node_id, 'position': position.to_dict()})

        except Exception as e:
            logger.error(f"Failed to drag node: {e}")
            return web.json_response({'error': str(e)}, status=500)

    async def release_node(self, request):
        try:
            _, engine = self._workspace_engine(request)
            node_id = request.match_info['node_id']
            position = engine.release_node(node_id)
            if position is None:
                return web.json_response({'error': f'Unknown node: {node_id}'}, status=404)
            return web.json_response({'node_id': node_id, 'position': position.to_dict()})

        except UnknownWorkspace as e:
            return web.json_response({'error': f'Unknown workspace: {e}'}, status=404)
        except Exception as e:
            logger.error(f"Failed to release node: {e}")
            return web.json_response({'error': str(e)}, status=500)

    async def get_routes(self, request):
        """Ranked route groups"""
        try:
            _, engine = self._workspace_engine(request)
            groups = engine.route_groups(
                source=request.query.get('source'),
                target=request.query.get('target'),
                tie_break=request.query.get('tie_break', 'recency'),
            )
            return web.json_response({'routes': [g.to_dict() for g in groups], 'timestamp': time.time()})

        except UnknownWorkspace as e:
            return web.json_response({'error': f'Unknown workspace: {e}'}, status=404)
        except ValueError as e:
            return web.json_response({'error': str(e)}, status=400)
        except Exception as e:
            logger.error(f"Failed to get routes: {e}")
            return web.json_response({'error': str(e)}, status=500)

    async def get_route_changes(self, request):
        try:
            _, engine = self._workspace_engine(request)
            reports = engine.route_changes(
                source=request.query.get('source'),
                target=request.query.get('target'),
            )
            return web.json_response({
                'total_changes': sum(r.change_count for r in reports),
                'streams': [r.to_dict() for r in reports],
                'timestamp': time.time()
            })

        except UnknownWorkspace as e:
            return web.json_response({'error': f'Unknown workspace: {e}'}, status=404)
        except Exception as e:
            logger.error(f"Failed to get route changes: {e}")
            return web.json_response({'error': str(e)}, status=500)

    async def get_path_analysis(self, request):
        """Stability and ICMP artifact analysis for one source/target pair"""
        try:
            source = request.query.get('source')
            target = request.query.get('target')

            if not source or not target:
                return web.json_response({
                    'error': 'Missing required parameters: source and target'
                }, status=400)

            _, engine = self._workspace_engine(request)
            analysis = engine.path_analysis(source, target)
            return web.json_response({
                'source': source,
                'target': target,
                'path_analysis': analysis.to_dict() if analysis else None,
                'timestamp': time.time()
            })

        except UnknownWorkspace as e:
            return web.json_response({'error': f'Unknown workspace: {e}'}, status=404)
        except Exception as e:
            logger.error(f"Failed to get path analysis: {e}")
            return web.json_response({'error': str(e)}, status=500)

    async def get_aggregated_traces(self, request):
        try:
            bucket = float(request.query.get('bucket', 60))
            limit = int(request.query.get('limit', 0))
            _, engine = self._workspace_engine(request)
            traces = engine.aggregated_traces(
                source=request.query.get('source'),
                target=request.query.get('target'),
                bucket_seconds=bucket,
                limit=limit,
            )
            return web.json_response({'traces': [t.to_dict() for t in traces], 'timestamp': time.time()})

        except UnknownWorkspace as e:
            return web.json_response({'error': f'Unknown workspace: {e}'}, status=404)
        except ValueError as e:
            return web.json_response({'error': str(e)}, status=400)
        except Exception as e:
            logger.error(f"Failed to aggregate traces: {e}")
            return web.json_response({'error': str(e)}, status=500)

    async def health_check(self, request):
        """Health check endpoint"""
        try:
            self.redis_client.ping()
            return web.json_response({
                'status': 'healthy',
                'version': get_cached_version(),
                'component': 'mapserver',
                'workspaces': sorted(self.engines),
                'source': self.source_status(),
                'timestamp': time.time()
            })
        except Exception as e:
            return web.json_response({
                'status': 'unhealthy',
                'version': get_cached_version(),
                'component': 'mapserver',
                'error': str(e),
                'source': self.source_status(),
                'timestamp': time.time()
            }, status=503)

    async def get_metrics(self, request):
        """Prometheus metrics endpoint"""
        return web.Response(
            body=generate_latest(),
            headers={'Content-Type': 'text/plain; version=0.0.4; charset=utf-8'}
        )

    async def close(self, app=None):
        if self.poller is not None:
            await self.poller.stop()
        for engine in self.engines.values():
            engine.close()


async def init_app(config_path: Optional[str], redis_client=None):
    server = TopologyMapServer(config_path, redis_client=redis_client)

    app = web.Application()
    app['server'] = server

    app.router.add_post('/ingest', server.ingest)
    app.router.add_post('/refresh', server.refresh)
    app.router.add_get('/topology', server.get_network_topology)
    app.router.add_get('/topology/png', server.get_topology_png)
    app.router.add_get('/topology/node/{node_id}', server.get_node)
    app.router.add_post('/topology/node/{node_id}/drag', server.drag_node)
    app.router.add_post('/topology/node/{node_id}/release', server.release_node)
    app.router.add_get('/routes', server.get_routes)
    app.router.add_get('/routes/changes', server.get_route_changes)
    app.router.add_get('/routes/analysis', server.get_path_analysis)
    app.router.add_get('/routes/aggregated', server.get_aggregated_traces)
    app.router.add_get('/health', server.health_check)
    app.router.add_get('/metrics', server.get_metrics)

    app.on_cleanup.append(server.close)

    if server.poller is not None:
        server.poller.start()

    return app


if __name__ == '__main__':
    config_path = sys.argv[1] if len(sys.argv) > 1 else 'config/mapserver.yaml'

    config = load_config(config_path)

    web.run_app(
        init_app(config_path),
        host=config['mapserver']['server']['host'],
        port=config['mapserver']['server']['port']
    )
