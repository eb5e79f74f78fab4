# Supabase table: applications
# This file documents the expected database schema
# Actual operations are handled via Supabase SDK in service.py

"""
Expected Supabase table structure:
- id: uuid (primary key, default: gen_random_uuid())
- user_id: uuid (foreign key to auth.users.id, not null)
- aws_account_id: uuid (foreign key to aws_accounts.id, not null)
- name: text (not null)
- region: text (nullable) - defaults to the AWS account's region
- deployment_method: text (not null) - values: github, docker
- deployment_target: text (not null, default: 'ecs') - values: ecs, ec2
- github: jsonb (nullable) - repo_url, branch, build_command, start_command, app_type, token, is_private
- docker: jsonb (nullable) - image, registry, tag
- runtime: jsonb (not null, default: {}) - port, cpu, memory, environment_variables
- ec2: jsonb (not null, default: {}) - instance_id, public_ip, private_ip, container_name
- aws: jsonb (not null, default: {}) - ecr_repository, ecr_image_uri, ecs_cluster, ecs_service,
  task_definition, task_definition_arn, security_group_id
- status: text (not null, default: 'pending') - values: pending, cloning, building, pushing,
  deploying, running, stopped, failed, error
- url: text (nullable)
- deployment_logs: jsonb (not null, default: []) - ordered "[<iso>Z] message" lines
- error_message: text (nullable)
- last_deployed_at: timestamp (nullable)
- run_version: integer (not null, default: 0) - bumped by redeploy and cancel
- created_at: timestamp (default: now())
- updated_at: timestamp (nullable)
"""
