import logging
from typing import Dict, Optional
from botocore.exceptions import ClientError, BotoCoreError
from app.core.exceptions import aws_error
from app.modules.credentials.schemas import AWSCredentials

logger = logging.getLogger(__name__)


class ClusterControl:
    """ECS (Fargate) operations for the managed-cluster deployment target."""

    def __init__(self, credentials: AWSCredentials, region: Optional[str] = None):
        self.region = region or credentials.region
        self.client = credentials.client("ecs", self.region)

    def ensure_cluster(self, cluster_name: str) -> dict:
        """Reuse an ACTIVE cluster of that name or create it"""
        try:
            existing = self.client.describe_clusters(clusters=[cluster_name])
            clusters = existing.get("clusters") or []
            if clusters and clusters[0].get("status") == "ACTIVE":
                logger.info(f"Cluster {cluster_name} already exists")
                return clusters[0]
            response = self.client.create_cluster(clusterName=cluster_name)
        except (ClientError, BotoCoreError) as e:
            raise aws_error(f"Failed to create ECS cluster {cluster_name}", e)
        logger.info(f"Created ECS cluster: {cluster_name}")
        return response["cluster"]

    def register_task_definition(
        self,
        family: str,
        container_name: str,
        image: str,
        port: int,
        cpu: str = "512",
        memory: str = "1024",
        environment: Optional[Dict[str, str]] = None,
        execution_role_arn: Optional[str] = None
    ) -> dict:
        container = {
            "name": container_name,
            "image": image,
            "portMappings": [{"containerPort": int(port), "protocol": "tcp"}],
            "environment": [{"name": k, "value": str(v)} for k, v in (environment or {}).items()],
            "logConfiguration": {
                "logDriver": "awslogs",
                "options": {
                    "awslogs-group": f"/ecs/{family}",
                    "awslogs-region": self.region,
                    "awslogs-stream-prefix": "ecs",
                    "awslogs-create-group": "true",
                },
            },
            "essential": True,
        }
        params = {
            "family": family,
            "networkMode": "awsvpc",
            "requiresCompatibilities": ["FARGATE"],
            "cpu": str(cpu or "512"),
            "memory": str(memory or "1024"),
            "containerDefinitions": [container],
        }
        if execution_role_arn:
            params["executionRoleArn"] = execution_role_arn
        try:
            response = self.client.register_task_definition(**params)
        except (ClientError, BotoCoreError) as e:
            raise aws_error(f"Failed to register task definition {family}", e)
        logger.info(f"Registered task definition: {family}")
        return response["taskDefinition"]

    def update_service(self, cluster: str, service_name: str, task_definition: str) -> dict:
        """Roll the service onto a new task definition"""
        try:
            response = self.client.update_service(
                cluster=cluster,
                service=service_name,
                taskDefinition=task_definition,
                forceNewDeployment=True
            )
        except (ClientError, BotoCoreError) as e:
            raise aws_error(f"Failed to update ECS service {service_name}", e)
        logger.info(f"Updated ECS service: {service_name}")
        return response["service"]

    def scale_service(self, cluster: str, service_name: str, desired_count: int) -> dict:
        try:
            response = self.client.update_service(
                cluster=cluster,
                service=service_name,
                desiredCount=desired_count
            )
        except (ClientError, BotoCoreError) as e:
            raise aws_error(f"Failed to scale ECS service {service_name} to {desired_count}", e)
        logger.info(f"Scaled ECS service {service_name} to {desired_count}")
        return response["service"]

    def stop_service(self, cluster: str, service_name: str) -> dict:
        return self.scale_service(cluster, service_name, 0)

    def start_service(self, cluster: str, service_name: str) -> dict:
        return self.scale_service(cluster, service_name, 1)

