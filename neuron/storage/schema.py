"""
Relational schema for the graph, analysis and provenance tables.

Every table that holds graph data carries a ``scope`` column; queries
always filter on it. JSON-valued columns are stored as TEXT.
"""

SCHEMA = """
CREATE TABLE IF NOT EXISTS nodes (
  id TEXT PRIMARY KEY,
  scope TEXT NOT NULL,
  slug TEXT NOT NULL,
  label TEXT NOT NULL,
  node_type TEXT NOT NULL DEFAULT 'concept',
  domain TEXT NOT NULL DEFAULT 'general',
  tier INTEGER,
  summary TEXT,
  description TEXT,
  content TEXT,
  metadata TEXT NOT NULL DEFAULT '{}',
  embedding TEXT,
  embedding_model TEXT,
  embedding_generated_at TEXT,
  cluster_id TEXT,
  cluster_similarity REAL,
  inbound_count INTEGER NOT NULL DEFAULT 0,
  outbound_count INTEGER NOT NULL DEFAULT 0,
  connection_count INTEGER NOT NULL DEFAULT 0,
  analysis_status TEXT NOT NULL DEFAULT 'pending',
  created_at TEXT NOT NULL,
  updated_at TEXT NOT NULL,
  UNIQUE(scope, slug)
);

CREATE TABLE IF NOT EXISTS edges (
  id TEXT PRIMARY KEY,
  scope TEXT NOT NULL,
  from_node_id TEXT NOT NULL,
  to_node_id TEXT NOT NULL,
  relationship_type TEXT NOT NULL DEFAULT 'related_to',
  strength REAL NOT NULL DEFAULT 0.5,
  confidence REAL NOT NULL DEFAULT 1.0,
  evidence TEXT NOT NULL DEFAULT '[]',
  label TEXT,
  description TEXT,
  metadata TEXT NOT NULL DEFAULT '{}',
  source TEXT NOT NULL DEFAULT 'manual',
  source_model TEXT,
  bidirectional INTEGER NOT NULL DEFAULT 0,
  created_at TEXT NOT NULL,
  updated_at TEXT NOT NULL,
  UNIQUE(scope, from_node_id, to_node_id, relationship_type)
);

CREATE TABLE IF NOT EXISTS settings (
  scope TEXT PRIMARY KEY,
  data TEXT NOT NULL,
  updated_at TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS clusters (
  id TEXT PRIMARY KEY,
  scope TEXT NOT NULL,
  label TEXT NOT NULL,
  centroid TEXT NOT NULL DEFAULT '[]',
  member_count INTEGER NOT NULL DEFAULT 0,
  avg_similarity REAL NOT NULL DEFAULT 0,
  cohesion REAL NOT NULL DEFAULT 0,
  created_at TEXT NOT NULL,
  updated_at TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS cluster_memberships (
  scope TEXT NOT NULL,
  node_id TEXT NOT NULL,
  cluster_id TEXT NOT NULL,
  similarity_score REAL NOT NULL,
  is_primary INTEGER NOT NULL DEFAULT 1,
  assigned_at TEXT NOT NULL,
  PRIMARY KEY (scope, node_id, cluster_id)
);

CREATE TABLE IF NOT EXISTS analysis_runs (
  id TEXT PRIMARY KEY,
  scope TEXT NOT NULL,
  run_type TEXT NOT NULL,
  input_params TEXT NOT NULL DEFAULT '{}',
  results TEXT NOT NULL DEFAULT '{}',
  status TEXT NOT NULL,
  progress INTEGER NOT NULL DEFAULT 0,
  progress_snapshot TEXT,
  started_at TEXT,
  completed_at TEXT,
  duration_ms INTEGER,
  error_message TEXT,
  error_stack TEXT,
  created_at TEXT NOT NULL,
  updated_at TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS suggested_edges (
  id TEXT PRIMARY KEY,
  scope TEXT NOT NULL,
  from_node_id TEXT NOT NULL,
  to_node_id TEXT NOT NULL,
  relationship_type TEXT NOT NULL,
  strength REAL,
  confidence REAL NOT NULL,
  reasoning TEXT,
  evidence TEXT NOT NULL DEFAULT '[]',
  status TEXT NOT NULL DEFAULT 'pending',
  source_model TEXT,
  analysis_run_id TEXT,
  reviewed_by TEXT,
  reviewed_at TEXT,
  review_reason TEXT,
  approved_edge_id TEXT,
  created_at TEXT NOT NULL,
  updated_at TEXT NOT NULL,
  UNIQUE(scope, from_node_id, to_node_id, relationship_type)
);

CREATE TABLE IF NOT EXISTS ingestion_sources (
  id TEXT PRIMARY KEY,
  scope TEXT NOT NULL,
  type TEXT NOT NULL,
  name TEXT NOT NULL,
  config TEXT NOT NULL DEFAULT '{}',
  created_at TEXT NOT NULL,
  updated_at TEXT NOT NULL,
  UNIQUE(scope, type, name)
);

CREATE TABLE IF NOT EXISTS source_items (
  id TEXT PRIMARY KEY,
  source_id TEXT NOT NULL,
  external_id TEXT NOT NULL,
  content_hash TEXT NOT NULL,
  url TEXT,
  metadata TEXT NOT NULL DEFAULT '{}',
  last_seen_at TEXT NOT NULL,
  deleted_at TEXT,
  created_at TEXT NOT NULL,
  updated_at TEXT NOT NULL,
  UNIQUE(source_id, external_id)
);

CREATE TABLE IF NOT EXISTS source_item_nodes (
  source_item_id TEXT NOT NULL,
  node_id TEXT NOT NULL,
  scope TEXT NOT NULL,
  created_at TEXT NOT NULL,
  PRIMARY KEY (source_item_id, node_id)
);

CREATE TABLE IF NOT EXISTS sync_runs (
  id TEXT PRIMARY KEY,
  source_id TEXT NOT NULL,
  started_at TEXT NOT NULL,
  completed_at TEXT,
  status TEXT,
  stats TEXT NOT NULL DEFAULT '{}',
  error TEXT
);

CREATE INDEX IF NOT EXISTS idx_nodes_scope_created ON nodes(scope, created_at);
CREATE INDEX IF NOT EXISTS idx_edges_scope_from ON edges(scope, from_node_id);
CREATE INDEX IF NOT EXISTS idx_edges_scope_to ON edges(scope, to_node_id);
CREATE INDEX IF NOT EXISTS idx_memberships_cluster ON cluster_memberships(scope, cluster_id);
CREATE INDEX IF NOT EXISTS idx_suggested_scope_status ON suggested_edges(scope, status);
CREATE INDEX IF NOT EXISTS idx_source_items_seen ON source_items(source_id, last_seen_at);
"""
