# Services layer for gateway orchestration
