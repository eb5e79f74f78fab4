# Supabase table: deployments
# This file documents the expected database schema
# Actual operations are handled via Supabase SDK in service.py

"""
Expected Supabase table structure:
- id: uuid (primary key, default: gen_random_uuid())
- user_id: uuid (foreign key to auth.users.id, not null)
- aws_account_id: uuid (foreign key to aws_accounts.id, not null)
- resource_type: text (not null) - values: ec2, s3, iam
- resource_name: text (nullable)
- config: jsonb (not null, default: {}) - validated request, region resolved
- status: text (not null, default: 'pending') - values: pending, completed, failed,
  destroying, destroyed, destroy_failed, deleted_externally
- terraform_output: text (nullable) - raw init/apply/destroy output
- outputs: jsonb (nullable) - flattened `terraform output -json`
- error_log: text (nullable)
- workspace_id: text (nullable) - set once Terraform has run for this record
- deleted_by: text (nullable) - values: ui, aws_console, unknown
- created_at: timestamp (default: now())
- updated_at: timestamp (nullable)
- deleted_at: timestamp (nullable)
- last_synced_at: timestamp (nullable)
"""
