"""Payment transactions with a status state machine, fraud checks and an HTTP API."""