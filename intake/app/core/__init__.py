SERVICE_NAME = "intake"
