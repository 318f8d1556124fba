# matrix-variate DLM: forward filtering, backward simulation smoothing
