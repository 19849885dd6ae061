#!/usr/bin/env python3
# -*- coding: utf-8 -*-

"""
Script Variables Background

后台任务：快照定期备份与剧本配置热更新
"""
