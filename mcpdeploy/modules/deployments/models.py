# Supabase tables owned by the deployment orchestrator
# This file documents the expected database schema
# Actual operations are handled via Supabase SDK in service.py

"""
deployments:
- id: uuid (primary key)
- user_id: uuid (not null)
- deployment_name: text (not null)
- unique (user_id, deployment_name)
- server_template_id: uuid (foreign key to server_templates.id)
- server_config: jsonb (tenant key/value config, opaque until validated)
- environment: text (default: 'production')
- advanced_config: jsonb (default: {}) - port, region, healthcheck_path, build_command,
  start_command, transport_type
- status: text (default: 'pending') - values: pending, validating, building, deploying,
  running, failed, crashed, cancelled, removed
- health_status: text (nullable) - values: healthy, degraded, unhealthy, unknown
- railway_project_id: text (nullable)
- railway_service_id: text (nullable)
- railway_deployment_id: text (nullable)
- railway_environment_id: text (nullable)
- service_url: text (nullable)
- health_check_url: text (nullable)
- error_message: text (nullable)
- last_health_check: timestamp (nullable)
- deployed_at: timestamp (nullable)
- created_at: timestamp (default: now())
- updated_at: timestamp (nullable)

deployment_logs (append-only):
- id: uuid (primary key)
- deployment_id: uuid (foreign key to deployments.id)
- log_level: text - values: debug, info, warn, error
- message: text
- metadata: jsonb (nullable)
- created_at: timestamp (default: now())

health_checks:
- id: uuid (primary key)
- deployment_id: uuid (foreign key to deployments.id)
- status: text - values: healthy, degraded, unhealthy, unknown
- response_time_ms: integer (nullable)
- status_code: integer (nullable)
- error_message: text (nullable)
- checked_at: timestamp - the newest row per deployment drives deployments.health_status

deployment_trials:
- id: uuid (primary key)
- deployment_id: uuid (nullable until linked)
- trial_application_id: uuid (foreign key to trial_applications.id)
- trial_start: timestamp
- trial_end: timestamp
- converted: boolean (default: false)

api_usage:
- id: uuid (primary key)
- deployment_id: uuid (foreign key to deployments.id)

railway_projects:
- id: uuid (primary key)
- user_id: uuid (unique)
- railway_project_id: text
- project_name: text
- updated_at: timestamp
- created_at: timestamp (default: now())
"""
