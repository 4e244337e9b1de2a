# Supabase table: server_templates
# This file documents the expected database schema
# Actual operations are handled via Supabase SDK in service.py

"""
Expected Supabase table structure:
- id: uuid (primary key)
- name: text (unique, not null) - internal server type, e.g. emailbison-mcp
- display_name: text (not null)
- description: text (nullable)
- category: text (not null)
- github_repo: text (not null) - owner/repo
- github_branch: text (default: 'main')
- required_env_vars: jsonb (default: []) - list of EnvVarSchema
- optional_env_vars: jsonb (default: [])
- port: integer (default: 3000)
- healthcheck_path: text (default: '/health')
- build_command: text (nullable)
- start_command: text (nullable)
- min_memory_mb: integer (default: 512)
- min_cpu_cores: numeric (default: 0.5)
- default_transport_type: text (default: 'sse') - values: sse, streamable-http, http
- icon_url: text (nullable)
- documentation_url: text (nullable)
- example_config: jsonb (nullable)
- tags: text[] (default: {})
- is_active: boolean (default: true)
- is_featured: boolean (default: false)
- requires_approval: boolean (default: false)
- allowed_user_ids: uuid[] (default: {}) - empty means public
- created_by: uuid (nullable)
- created_at: timestamp (default: now())
- updated_at: timestamp (nullable)
"""
